"""Dispatch record (`dispatch.json`) plus the two operator flag files.

- dispatch_continue.json: set by /continue, consumed by the engine in step mode
- stop_signal: set by /stop, observed between agent turns
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from pydantic import ValidationError

from ..contracts.v1 import Dispatch
from ..paths import RelayPaths
from ..util.file_lock import locked
from ..util.fs import atomic_write_json, atomic_write_text, read_json, remove_file
from ..util.time import utc_now_iso

logger = logging.getLogger("agentrelay.dispatch")


def load_dispatch(paths: RelayPaths) -> Optional[Dispatch]:
    doc = read_json(paths.dispatch)
    if not doc:
        return None
    try:
        return Dispatch.model_validate(doc)
    except ValidationError:
        logger.warning("dispatch.json does not validate; ignoring it")
        return None


def save_dispatch(paths: RelayPaths, dispatch: Dispatch) -> None:
    atomic_write_json(paths.dispatch, dispatch.model_dump(mode="json"))


@contextmanager
def edit_dispatch(paths: RelayPaths) -> Iterator[Optional[Dispatch]]:
    with locked(paths.guard(paths.dispatch)):
        d = load_dispatch(paths)
        yield d
        if d is not None:
            save_dispatch(paths, d)


def clear_dispatch(paths: RelayPaths) -> bool:
    with locked(paths.guard(paths.dispatch)):
        return remove_file(paths.dispatch)


def request_continue(paths: RelayPaths) -> None:
    atomic_write_json(paths.continue_flag, {"ts": utc_now_iso(), "action": "continue"})


def consume_continue(paths: RelayPaths) -> bool:
    return remove_file(paths.continue_flag)


def request_stop(paths: RelayPaths, reason: str = "") -> None:
    atomic_write_text(paths.stop_signal, (reason or "stop") + "\n")


def stop_requested(paths: RelayPaths) -> bool:
    return paths.stop_signal.exists()


def clear_stop(paths: RelayPaths) -> bool:
    return remove_file(paths.stop_signal)
