"""Durable session store with advisory locking and atomic writes."""

import fcntl
import json
import logging
import os
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator, Optional

from .models import Session, SessionStatus, StoreData
from .protocol import SessionEvent, Transition, apply_transition

logger = logging.getLogger(__name__)

DEFAULT_STATE_FILE = "~/Library/Application Support/CCStatusBar/sessions.json"

TabIndexBinder = Callable[[SessionEvent], Optional[int]]
ChangeListener = Callable[[], None]


class SessionStore:
    """
    Owns the persisted session map.

    Every mutation runs under an exclusive flock on a sidecar lock file:
    the on-disk document is reloaded if another process changed it, the
    mutation is applied, and the result is written back atomically. If the
    write fails, the in-memory state stays authoritative.
    """

    # Write failures are reported once per process
    _write_error_reported = False

    def __init__(
        self,
        state_file: Optional[str] = None,
        config: Optional[dict] = None,
        clock: Callable[[], datetime] = datetime.now,
        tab_index_binder: Optional[TabIndexBinder] = None,
    ):
        config = config or {}
        state_file = (
            state_file
            or os.environ.get("CCSTATUS_STATE_FILE")
            or config.get("paths", {}).get("state_file", DEFAULT_STATE_FILE)
        )
        self.state_file = Path(os.path.expanduser(state_file))
        self.lock_file = self.state_file.with_name(self.state_file.name + ".lock")
        self.timeout_minutes = config.get("sessions", {}).get("timeout_minutes", 60)
        self._clock = clock
        self.tab_index_binder = tab_index_binder
        self._listeners: list[ChangeListener] = []
        self._data = StoreData(updated_at=clock())
        self._loaded_signature: Optional[tuple] = None
        self._load_if_changed()

    def add_listener(self, listener: ChangeListener) -> None:
        """Register a callback invoked after every mutation."""
        self._listeners.append(listener)

    # Persistence

    def _file_signature(self) -> Optional[tuple]:
        try:
            st = self.state_file.stat()
        except OSError:
            return None
        return (st.st_ino, st.st_mtime_ns, st.st_size)

    def _load_if_changed(self) -> None:
        signature = self._file_signature()
        if signature is None or signature == self._loaded_signature:
            return
        self._data = self._read()
        self._loaded_signature = signature

    def _read(self) -> StoreData:
        """Read the document; missing or unparseable files yield an empty store."""
        try:
            with open(self.state_file) as f:
                raw = json.load(f)
            return StoreData.from_dict(raw)
        except FileNotFoundError:
            return StoreData(updated_at=self._clock())
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Unreadable state file {self.state_file}, starting empty: {e}")
            return StoreData(updated_at=self._clock())

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """Hold an exclusive advisory lock; proceed unlocked if the lock cannot be taken."""
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.lock_file, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            self._report_write_error(f"Cannot open lock file {self.lock_file}: {e}")
            yield
            return
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
        except OSError as e:
            os.close(fd)
            self._report_write_error(f"Cannot lock {self.lock_file}: {e}")
            yield
            return
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

    def _write(self) -> bool:
        """
        Write the document to a temp file and rename it over the state file.

        Returns:
            True if the full document was persisted.
        """
        payload = json.dumps(self._data.to_dict(), indent=2, sort_keys=True).encode()
        temp_file = self.state_file.with_suffix(".tmp")
        try:
            with open(temp_file, "wb") as f:
                written = f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            if written != len(payload):
                raise OSError(f"Partial write: {written}/{len(payload)} bytes")
            os.replace(temp_file, self.state_file)
        except OSError as e:
            self._report_write_error(f"Failed to save state to {self.state_file}: {e}")
            try:
                temp_file.unlink()
            except OSError:
                pass
            return False
        self._loaded_signature = self._file_signature()
        return True

    @classmethod
    def _report_write_error(cls, message: str) -> None:
        if cls._write_error_reported:
            logger.debug(message)
            return
        cls._write_error_reported = True
        logger.error(f"CRITICAL: {message}")
        logger.error("Session state NOT persisted; check permissions for the state directory")

    def _commit(self) -> None:
        self._data.updated_at = self._clock()
        self._write()
        for listener in self._listeners:
            listener()

    # Operations

    def ingest(self, event: SessionEvent) -> Optional[Session]:
        """
        Apply a decoded event.

        Returns:
            The updated session, or None when the event removed it.
        """
        with self._locked():
            self._load_if_changed()
            sessions = self._data.sessions
            key = event.key
            now = self._clock()

            if event.transition == Transition.REMOVE:
                removed = sessions.pop(key, None)
                if removed:
                    logger.info(f"Session {key} ended ({event.name}), removed")
                self._commit()
                return None

            inherited_order = None
            if event.tty:
                for other_key in [k for k, s in sessions.items() if s.tty == event.tty and k != key]:
                    evicted = sessions.pop(other_key)
                    if inherited_order is None:
                        inherited_order = evicted.display_order
                    logger.info(f"Session {other_key} replaced on {event.tty} by {key}")

            session = sessions.get(key)
            if session is None:
                session = Session(
                    session_id=event.session_id,
                    cwd=event.cwd,
                    tty=event.tty,
                    created_at=now,
                    updated_at=now,
                )
                if inherited_order is not None:
                    session.display_order = inherited_order
                else:
                    orders = [s.display_order for s in sessions.values() if s.display_order is not None]
                    session.display_order = max(orders, default=0) + 1
                if event.is_session_start and self.tab_index_binder:
                    session.ghostty_tab_index = self.tab_index_binder(event)
                sessions[key] = session
                logger.info(f"New session {key} in {event.cwd} (order {session.display_order})")

            previous = session.status
            apply_transition(session, event.transition, now)
            if not session.cwd and event.cwd:
                session.cwd = event.cwd
            self._merge_hints(session, event)
            if previous != session.status:
                logger.info(f"Session {key}: {previous.value} -> {session.status.value} ({event.name})")

            self._disambiguate()
            self._commit()
            return session

    @staticmethod
    def _merge_hints(session: Session, event: SessionEvent) -> None:
        # First value wins for environment hints
        if session.term_program is None:
            session.term_program = event.term_program
        if session.actual_term_program is None:
            session.actual_term_program = event.actual_term_program
        if session.editor_bundle_id is None:
            session.editor_bundle_id = event.editor_bundle_id
        if session.editor_pid is None:
            session.editor_pid = event.editor_pid
        if event.tool_name:
            session.tool_name = event.tool_name
        if event.summary:
            session.summary = event.summary
        if event.artifact:
            session.artifact = event.artifact

    def _disambiguate(self) -> None:
        """Mark sessions sharing a project basename; the flag is never cleared."""
        groups: dict[str, list[Session]] = {}
        for session in self._data.sessions.values():
            groups.setdefault(session.project_name, []).append(session)
        for name, members in groups.items():
            if len(members) < 2:
                continue
            for session in members:
                if not session.is_disambiguated:
                    session.is_disambiguated = True
                    logger.debug(f"Disambiguated '{name}' -> '{session.display_name}'")

    def _update(self, key: str, mutate: Callable[[Session], bool]) -> bool:
        with self._locked():
            self._load_if_changed()
            session = self._data.sessions.get(key)
            if session is None or not mutate(session):
                return False
            self._commit()
            return True

    def acknowledge(self, key: str) -> bool:
        """Mark a waiting session as seen. No-op if already acknowledged."""
        def mutate(session: Session) -> bool:
            if session.is_acknowledged:
                return False
            session.is_acknowledged = True
            return True
        return self._update(key, mutate)

    def clear_acknowledge(self, key: str) -> bool:
        def mutate(session: Session) -> bool:
            if not session.is_acknowledged:
                return False
            session.is_acknowledged = False
            return True
        return self._update(key, mutate)

    def mark_stopped(self, key: str) -> bool:
        def mutate(session: Session) -> bool:
            session.status = SessionStatus.STOPPED
            session.waiting_reason = None
            session.is_tool_running = False
            session.updated_at = self._clock()
            return True
        return self._update(key, mutate)

    def update_tab_index(self, key: str, tab_index: int) -> bool:
        def mutate(session: Session) -> bool:
            if session.ghostty_tab_index == tab_index:
                return False
            session.ghostty_tab_index = tab_index
            return True
        return self._update(key, mutate)

    def remove(self, key: str) -> bool:
        with self._locked():
            self._load_if_changed()
            if self._data.sessions.pop(key, None) is None:
                return False
            self._commit()
            return True

    def clear(self) -> None:
        """Delete every session."""
        with self._locked():
            self._data = StoreData(updated_at=self._clock())
            self._commit()
        logger.info("Session store cleared")

    def reload(self) -> None:
        self._load_if_changed()

    def get(self, key: str) -> Optional[Session]:
        self._load_if_changed()
        return self._data.sessions.get(key)

    def all_sessions(self) -> list[Session]:
        self._load_if_changed()
        return list(self._data.sessions.values())

    def list_sessions(self) -> list[Session]:
        """Active sessions in display order."""
        self._load_if_changed()
        return self._data.active_sessions(self.timeout_minutes, now=self._clock())
