"""Watchdog record (`watchdog.json`): restart window, crash counters, fix gate."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from pydantic import ValidationError

from ..contracts.v1 import WatchdogState
from ..paths import RelayPaths
from ..util.file_lock import locked
from ..util.fs import atomic_write_json, read_json

logger = logging.getLogger("agentrelay.watchdog")


def load_watchdog_state(paths: RelayPaths) -> WatchdogState:
    try:
        return WatchdogState.model_validate(read_json(paths.watchdog_state))
    except ValidationError:
        logger.warning("watchdog.json does not validate; starting fresh")
        return WatchdogState()


@contextmanager
def edit_watchdog_state(paths: RelayPaths) -> Iterator[WatchdogState]:
    with locked(paths.guard(paths.watchdog_state)):
        st = load_watchdog_state(paths)
        yield st
        atomic_write_json(paths.watchdog_state, st.model_dump(mode="json"))
