"""Factory helpers for audio pipeline services."""

from __future__ import annotations

import importlib
from dataclasses import fields
from typing import Any, Callable, Mapping, Optional

from audiojobs_modules.config import logger

from .services import AudioPipelineServices, default_audio_services

SERVICE_KEYS = tuple(f.name for f in fields(AudioPipelineServices))


def _load_callable(path: str) -> Callable[..., Any]:
    module_name, _, attr = path.rpartition(":")
    if not module_name:
        raise ValueError(f"Invalid callable path '{path}'. Expected 'module:attr'.")
    module = importlib.import_module(module_name)
    target = getattr(module, attr, None)
    if target is None:
        raise AttributeError(f"{module_name!r} has no attribute {attr!r}")
    if not callable(target):
        raise TypeError(f"{path!r} is not callable.")
    return target


def build_services(
    config: Optional[Mapping[str, Any]] = None,
) -> AudioPipelineServices:
    """Build the service collection, replacing hooks named in ``config``.

    Values may be callables or ``"module:attr"`` strings.
    """
    if not config:
        return default_audio_services()

    unknown = sorted(set(config) - set(SERVICE_KEYS))
    if unknown:
        logger.warning("Ignoring unknown service overrides", extra={"keys": unknown})

    replacements: dict[str, Callable[..., Any]] = {}
    for key in SERVICE_KEYS:
        candidate = config.get(key)
        if not candidate:
            continue
        if isinstance(candidate, str):
            candidate = _load_callable(candidate)
        if not callable(candidate):
            raise TypeError(f"Service override for '{key}' must be callable.")
        replacements[key] = candidate

    base = default_audio_services()
    services = AudioPipelineServices(
        **{key: replacements.get(key, getattr(base, key)) for key in SERVICE_KEYS}
    )

    logger.debug(
        "Audio services constructed",
        extra={"overrides": sorted(replacements.keys())},
    )
    return services


__all__ = ["SERVICE_KEYS", "build_services"]
