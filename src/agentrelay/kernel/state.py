"""Controller state record (`state.json`): projects, backend selection, plan."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional

from pydantic import ValidationError

from ..contracts.v1 import RelayState
from ..paths import RelayPaths, default_paths
from ..util.file_lock import locked
from ..util.fs import atomic_write_json, read_json
from ..util.time import utc_now_iso

logger = logging.getLogger("agentrelay.state")


def load_state(paths: Optional[RelayPaths] = None) -> RelayState:
    p = paths or default_paths()
    doc = read_json(p.state)
    try:
        return RelayState.model_validate(doc)
    except ValidationError:
        logger.warning("state.json does not validate; using defaults")
        return RelayState()


@contextmanager
def edit_state(paths: Optional[RelayPaths] = None) -> Iterator[RelayState]:
    """Load, let the caller mutate, then atomically store the state.

    Nothing is written if the body raises.
    """
    p = paths or default_paths()
    with locked(p.guard(p.state)):
        state = load_state(p)
        yield state
        state.plan.updated_at = utc_now_iso()
        atomic_write_json(p.state, state.model_dump(mode="json"))


def active_project_path(state: RelayState, paths: RelayPaths) -> Path:
    """Directory for chat turns: the selected project, else the relay workspace."""
    if state.active_project and state.active_project in state.projects:
        return Path(state.projects[state.active_project])
    ws = paths.workspace
    ws.mkdir(parents=True, exist_ok=True)
    return ws


def add_project(paths: RelayPaths, name: str, path: Path) -> Dict[str, str]:
    with edit_state(paths) as state:
        state.projects[name] = str(path.expanduser().resolve())
        if not state.active_project:
            state.active_project = name
        return dict(state.projects)


def use_project(paths: RelayPaths, name: str) -> bool:
    with edit_state(paths) as state:
        if name not in state.projects:
            return False
        state.active_project = name
        return True
