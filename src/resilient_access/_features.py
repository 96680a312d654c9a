"""Optional extras detection.

The core install needs only httpx, pydantic and pyyaml; adapters backed by
optional packages check availability here before importing them.
"""
from __future__ import annotations

import importlib.util


def is_available(module_name: str) -> bool:
    """Whether ``module_name`` can be imported, without importing it."""
    try:
        return importlib.util.find_spec(module_name) is not None
    except (ImportError, ValueError):
        return False


HAS_KEYRING: bool = is_available("keyring")


def require_extra(extra_name: str, module_name: str) -> None:
    """Fail with an install hint when an optional extra is missing.

    Args:
        extra_name: Name of the pip extra (e.g. 'keyring')
        module_name: Module the extra provides

    Raises:
        ImportError: If the module is not installed
    """
    if is_available(module_name):
        return
    raise ImportError(
        f"This feature needs the '{extra_name}' extra: "
        f"pip install 'resilient-access[{extra_name}]'"
    )
