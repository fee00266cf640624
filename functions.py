"""
============================================================
FLOW-PRESSURE v1.0 - Function Registry
============================================================
Named backend functions, invoked the way the dashboard calls them:

    from functions import invoke

    result = invoke("stockPressureIndexCalculator", {"symbols": ["AAPL"]})

Each operational module registers its entry point with ``@register``.
Importing this module imports every registering module so the
registry is complete.
============================================================
"""

from __future__ import annotations

import importlib
from typing import Any, Callable, Dict, List, Optional

from config import get_logger
from entity_store import EntityStore, get_store

logger = get_logger(__name__)

FunctionHandler = Callable[[Dict[str, Any], EntityStore], Dict[str, Any]]

_REGISTRY: Dict[str, FunctionHandler] = {}

_PROVIDERS = (
    "market_data",
    "pressure_index",
    "semantic_pressure",
    "opportunity_scanner",
    "advanced_orders",
    "portfolio",
    "backtester",
    "reports",
    "learning",
)


class UnknownFunctionError(KeyError):
    """Raised when invoking a function name that is not registered."""


def register(name: str) -> Callable[[FunctionHandler], FunctionHandler]:
    """Decorator registering ``handler(payload, store) -> dict`` under ``name``."""

    def decorator(handler: FunctionHandler) -> FunctionHandler:
        _REGISTRY[name] = handler
        return handler

    return decorator


def _load_providers() -> None:
    for module_name in _PROVIDERS:
        importlib.import_module(module_name)


def available_functions() -> List[str]:
    """Sorted list of registered function names."""
    _load_providers()
    return sorted(_REGISTRY)


def invoke(
    name: str,
    payload: Optional[Dict[str, Any]] = None,
    store: Optional[EntityStore] = None,
) -> Dict[str, Any]:
    """
    Invoke a registered function by name.

    Args:
        name: Function name, e.g. "simulateTrade".
        payload: JSON-like request body.
        store: Entity store; defaults to the process-wide store.

    Returns:
        The function's JSON-like response dict.

    Raises:
        UnknownFunctionError: If ``name`` is not registered.
    """
    if name not in _REGISTRY:
        _load_providers()
    handler = _REGISTRY.get(name)
    if handler is None:
        raise UnknownFunctionError(name)

    logger.info("Invoking function %s", name)
    return handler(payload or {}, store or get_store())
