"""
Automation actions — built-ins plus per-service plugin modules.

An action is an async callable taking a JobContext and returning a
JSON-serializable result. Lookup order for ``(service, action)``:

1. actions registered in-process (the built-ins are registered here)
2. ``<plugins_dir>/<service>.py``, attribute ``<action>``

Plugins are plain Python modules, for example ``~/.keysmith/plugins/acme.py``:

    async def fetchKey(ctx):
        page = await ctx.resource.new_page()
        ...
        return key
"""

from __future__ import annotations

import importlib.util
import inspect
import logging
import re
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path
from types import ModuleType
from typing import Any

from keysmith.automation.models import JobContext
from keysmith.errors import ValidationError

logger = logging.getLogger(__name__)

Action = Callable[[JobContext], Awaitable[Any]]

NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_]{0,63}$")

OPENAI_KEYS_URL = "https://platform.openai.com/account/api-keys"


def validate_name(kind: str, value: Any) -> str:
    """Service and action names double as file and attribute names."""
    if not isinstance(value, str) or not NAME_PATTERN.match(value):
        raise ValidationError(f"Invalid {kind} name: {value!r}")
    return value


# ─── Built-in actions ────────────────────────────────────────────────────


async def fetch_openai_key(ctx: JobContext) -> str:
    """Create a new OpenAI API key in the user's signed-in browser session.

    The page waits for the "Create new secret key" button, which only shows
    once the user has signed in, so login happens interactively in the
    (headed) browser for as long as the job deadline allows.
    """
    page = await ctx.resource.new_page()
    try:
        await page.set_extra_http_headers({"Accept-Language": "en-US,en;q=0.9"})
        await page.goto(OPENAI_KEYS_URL, wait_until="networkidle", timeout=30_000)

        remaining = (ctx.deadline - datetime.now(UTC)).total_seconds()
        create = page.locator('button:has-text("Create new secret key")')
        await create.wait_for(state="visible", timeout=max(remaining, 1) * 1000)
        await create.click()

        key_element = page.locator('code, .api-key, [data-testid="key-value"]').first
        await key_element.wait_for(state="visible", timeout=10_000)
        api_key = ((await key_element.text_content()) or "").strip()
    finally:
        await page.close()

    if not api_key:
        raise ValueError("API key was empty")
    if not api_key.startswith("sk-"):
        raise ValueError("Invalid API key format")
    return api_key


BUILTIN_ACTIONS: dict[tuple[str, str], Action] = {
    ("openai", "fetchKey"): fetch_openai_key,
}


# ─── Registry ────────────────────────────────────────────────────────────


class ActionRegistry:
    """Resolves ``(service, action)`` pairs to callables."""

    def __init__(self, plugins_dir: Path | None = None, *, builtins: bool = True):
        self.plugins_dir = Path(plugins_dir) if plugins_dir else None
        self._actions: dict[tuple[str, str], Action] = dict(BUILTIN_ACTIONS) if builtins else {}
        self._plugins: dict[str, ModuleType] = {}

    def register(self, service_name: str, action_name: str, action: Action) -> None:
        validate_name("service", service_name)
        validate_name("action", action_name)
        if not inspect.iscoroutinefunction(action):
            raise ValidationError(f"Action {service_name}.{action_name} must be an async function")
        self._actions[(service_name, action_name)] = action

    def resolve(self, service_name: str, action_name: str) -> Action | None:
        validate_name("service", service_name)
        validate_name("action", action_name)

        action = self._actions.get((service_name, action_name))
        if action is not None:
            return action

        module = self._load_plugin(service_name)
        if module is None:
            return None
        candidate = getattr(module, action_name, None)
        if candidate is None:
            return None
        if not inspect.iscoroutinefunction(candidate):
            raise ValidationError(
                f"Plugin action {service_name}.{action_name} must be an async function"
            )
        return candidate

    def available(self) -> list[str]:
        """Registered actions as ``service.action`` (plugins are not scanned)."""
        return sorted(f"{s}.{a}" for s, a in self._actions)

    def _load_plugin(self, service_name: str) -> ModuleType | None:
        if service_name in self._plugins:
            return self._plugins[service_name]
        if self.plugins_dir is None:
            return None
        path = self.plugins_dir / f"{service_name}.py"
        if not path.is_file():
            return None

        spec = importlib.util.spec_from_file_location(f"keysmith_plugins.{service_name}", path)
        if spec is None or spec.loader is None:
            return None
        module = importlib.util.module_from_spec(spec)
        try:
            spec.loader.exec_module(module)
        except Exception as e:
            logger.exception("Failed to load automation plugin %s", path)
            raise ValidationError(f"Plugin for {service_name} failed to load: {e}") from e

        logger.info("Loaded automation plugin %s", path)
        self._plugins[service_name] = module
        return module
