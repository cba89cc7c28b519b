"""Post-mortem session records written to disk."""

import json
import logging
from pathlib import Path
from typing import Optional

import aiofiles

from installer.models.session import InstallSession


class HistoryStore:
    """Writes each session's redacted record to ``<history_dir>/<session_id>.json``.

    Purely diagnostic: write failures are logged and never interrupt the install.
    """

    def __init__(self, history_dir: Optional[str]):
        self.logger = logging.getLogger("installer.history")
        self.history_dir = Path(history_dir) if history_dir else None

    def path_for(self, session_id: str) -> Optional[Path]:
        if self.history_dir is None:
            return None
        return self.history_dir / f"{session_id}.json"

    async def save(self, session: InstallSession) -> None:
        path = self.path_for(session.session_id)
        if path is None:
            return

        # SecretStr fields dump as "**********"
        data = json.dumps(session.model_dump(mode="json"), indent=2)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(data)
            tmp_path.replace(path)
            self.logger.debug(
                f"Saved session record: id={session.session_id}, state={session.state.value}"
            )
        except OSError as e:
            self.logger.error(f"Failed to save session record {path}: {e}")
