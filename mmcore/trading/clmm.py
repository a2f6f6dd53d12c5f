from __future__ import annotations

import importlib
import logging
from typing import Any

from mmcore.common import log_event

from .types import ClmmClient


def load_clmm_client(factory_path: str, *, logger: logging.Logger, **kwargs: Any) -> ClmmClient | None:
    """Builds the CLMM adapter named by ``package.module:callable``; None when unset."""
    path = (factory_path or "").strip()
    if not path:
        log_event(
            logger,
            level="warning",
            event="clmm_client_disabled",
            message="CLMM_CLIENT_FACTORY is not set; range monitoring is disabled",
        )
        return None

    module_name, separator, attribute = path.partition(":")
    if not separator or not module_name or not attribute:
        raise ValueError(f"CLMM_CLIENT_FACTORY must look like 'module:callable', got {path!r}")

    module = importlib.import_module(module_name)
    factory = getattr(module, attribute, None)
    if factory is None or not callable(factory):
        raise ValueError(f"{path!r} does not name a callable")

    client = factory(logger=logger, **kwargs)
    for required in ("current_tick", "build_close_position", "build_open_position"):
        if not callable(getattr(client, required, None)):
            raise TypeError(f"CLMM client from {path!r} is missing {required}()")

    log_event(
        logger,
        level="info",
        event="clmm_client_loaded",
        message="CLMM client loaded",
        factory=path,
    )
    return client
