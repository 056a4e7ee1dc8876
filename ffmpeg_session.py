"""FFmpeg session lifecycle management."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

import asyncio
import contextlib
import logging
import pathlib
import re
import shutil
import threading
import time

from errors import (
    ArtifactNotFound,
    StreamingError,
    TranscodeLaunchError,
    TranscodeStartTimeout,
)
from ffmpeg_command import (
    MANIFEST_NAME,
    build_hls_ffmpeg_cmd,
    get_hls_segment_duration,
    get_settings,
    probe_tracks,
    validate_selection,
)
from util import derive_session_key, is_valid_session_key


log = logging.getLogger(__name__)

SessionState = Literal["starting", "ready", "stopping", "ended", "failed"]

# Timing constants
_POLL_INTERVAL_SEC = 0.2
_START_TIMEOUT_SEC = 30.0
_STDERR_TAIL_LINES = 20
_KILL_GRACE_SEC = 2.0

_ARTIFACT_NAME_RE = re.compile(r"[A-Za-z0-9_-]+\.[A-Za-z0-9]{1,8}")

SEGMENTED_URL_PREFIX = "/playback/segmented"


def manifest_url(session_key: str) -> str:
    return f"{SEGMENTED_URL_PREFIX}/{session_key}/{MANIFEST_NAME}"


@dataclass(slots=True, eq=False)
class TranscodeSession:
    key: str
    source: pathlib.Path
    output_dir: pathlib.Path
    state: SessionState = "starting"
    process: Any = None
    started: float = field(default_factory=time.time)
    last_access: float = field(default_factory=time.time)
    ready: asyncio.Event = field(default_factory=asyncio.Event)
    exited: asyncio.Event = field(default_factory=asyncio.Event)
    manifest_seen: bool = False
    reaped: bool = False
    error: str = ""
    stderr_tail: list[str] = field(default_factory=list)

    @property
    def manifest_path(self) -> pathlib.Path:
        return self.output_dir / MANIFEST_NAME

    @property
    def is_live(self) -> bool:
        return self.state in ("starting", "ready")

    def snapshot(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "source": str(self.source),
            "state": self.state,
            "pid": getattr(self.process, "pid", None),
            "started": self.started,
            "last_access": self.last_access,
            "manifest": manifest_url(self.key),
        }


# ===========================================================================
# Process Helpers
# ===========================================================================


def _is_process_alive(proc: Any) -> bool:
    """Check if process is still running."""
    if proc is None:
        return False
    if hasattr(proc, "returncode"):
        return proc.returncode is None
    return False


async def _kill_process(proc: Any, grace_sec: float = _KILL_GRACE_SEC) -> bool:
    """Kill process gracefully (SIGTERM then SIGKILL), return True if killed."""
    try:
        # Try graceful termination first (lets ffmpeg flush buffers)
        proc.terminate()
    except (ProcessLookupError, OSError):
        return False
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace_sec)
        return True
    except TimeoutError:
        log.warning("ffmpeg pid=%s ignored SIGTERM for %.1fs, killing", proc.pid, grace_sec)
    try:
        proc.kill()
    except (ProcessLookupError, OSError):
        return True
    await proc.wait()
    return True


async def _spawn_ffmpeg(cmd: list[str]) -> Any:
    return await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
    )


async def _monitor_ffmpeg_stderr(
    process: Any,
    session_key: str,
    stderr_lines: list[str],
) -> None:
    if process.stderr is None:
        return
    while True:
        line = await process.stderr.readline()
        if not line:
            break
        text = line.decode(errors="replace").rstrip()
        stderr_lines.append(text)
        del stderr_lines[:-_STDERR_TAIL_LINES]
        is_fatal = "fatal" in text.lower() or "error" in text.lower()
        level = logging.WARNING if is_fatal else logging.DEBUG
        log.log(level, "ffmpeg:%s %s", session_key, text)


# ===========================================================================
# Session Manager
# ===========================================================================


class SessionManager:
    """Owns the registry of transcode sessions, one per session key.

    The registry is only touched under ``_lock``, and the lock is never held
    across an await. Readers outside this class get snapshots.
    """

    def __init__(
        self,
        output_root: pathlib.Path,
        start_timeout_sec: float = _START_TIMEOUT_SEC,
        idle_timeout_sec: float = 0,
    ) -> None:
        self.output_root = pathlib.Path(output_root)
        self.start_timeout_sec = start_timeout_sec
        self.idle_timeout_sec = idle_timeout_sec
        self._sessions: dict[str, TranscodeSession] = {}
        self._lock = threading.Lock()
        self._background_tasks: set[asyncio.Task[None]] = set()

    # -----------------------------------------------------------------------
    # Housekeeping
    # -----------------------------------------------------------------------

    def reset_output_root(self) -> None:
        """Remove all session output. Run at startup, before any request."""
        self.output_root.mkdir(parents=True, exist_ok=True)
        removed = 0
        for entry in self.output_root.iterdir():
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry, ignore_errors=True)
            else:
                entry.unlink(missing_ok=True)
            removed += 1
        with self._lock:
            self._sessions.clear()
        if removed:
            log.info("Startup cleanup: removed %d leftover transcode entries", removed)

    async def shutdown(self) -> None:
        """Kill all running ffmpeg processes for clean shutdown."""
        with self._lock:
            sessions = [s for s in self._sessions.values() if _is_process_alive(s.process)]
            self._sessions.clear()
        results = await asyncio.gather(*(_kill_process(s.process) for s in sessions))
        for session, killed in zip(sessions, results):
            if killed:
                log.info("Shutdown: killed ffmpeg for session %s", session.key)

    async def reap_idle_sessions(self) -> int:
        """Stop live sessions nobody has fetched from within the idle timeout.

        Reaped sessions stay registered as "stopping" until their output is
        gone, so a new request for the same key waits instead of joining.
        Returns the number of sessions stopped. No-op when the timeout is 0.
        """
        if self.idle_timeout_sec <= 0:
            return 0
        now = time.time()
        with self._lock:
            idle = [
                s
                for s in self._sessions.values()
                if s.is_live
                and _is_process_alive(s.process)
                and now - s.last_access > self.idle_timeout_sec
            ]
            for session in idle:
                session.reaped = True
                session.state = "stopping"
        for session in idle:
            log.info(
                "Stopping idle session %s (no fetch in %.0fs)",
                session.key,
                now - session.last_access,
            )
        await asyncio.gather(*(_kill_process(s.process) for s in idle))
        return len(idle)

    # -----------------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------------

    def get_session(self, session_key: str) -> dict[str, Any] | None:
        with self._lock:
            session = self._sessions.get(session_key)
            return session.snapshot() if session else None

    def list_sessions(self) -> list[dict[str, Any]]:
        with self._lock:
            sessions = [s.snapshot() for s in self._sessions.values()]
        return sorted(sessions, key=lambda s: s["started"])

    # -----------------------------------------------------------------------
    # Request / Launch
    # -----------------------------------------------------------------------

    def _get_or_create(self, key: str, source: pathlib.Path) -> tuple[TranscodeSession, bool]:
        """Atomically join a registered session or register a fresh one.

        A joined session may be "stopping"; the caller waits for it to exit.
        """
        with self._lock:
            existing = self._sessions.get(key)
            if existing is not None and (existing.is_live or existing.state == "stopping"):
                return existing, False
            session = TranscodeSession(key=key, source=source, output_dir=self.output_root / key)
            self._sessions[key] = session
            return session, True

    def _discard(self, session: TranscodeSession, error: str) -> None:
        """Drop a session whose launch did not complete, waking any joined waiters."""
        with self._lock:
            if self._sessions.get(session.key) is session:
                del self._sessions[session.key]
            session.state = "failed"
            session.error = error
            process = session.process
        if _is_process_alive(process):
            self._spawn_background_task(_kill_process(process))
        shutil.rmtree(session.output_dir, ignore_errors=True)
        session.ready.set()
        session.exited.set()

    async def request_session(
        self,
        item_id: str,
        source: pathlib.Path,
        audio_index: int | None = None,
        subtitle_index: int | None = None,
    ) -> str:
        """Start or join the transcode for this item and track selection.

        Returns the manifest URL once the manifest exists on disk.
        """
        key = derive_session_key(item_id, audio_index, subtitle_index)
        session, created = self._get_or_create(key, source)
        while session.state == "stopping":
            log.info("Session %s is stopping, waiting before relaunch", key)
            await session.exited.wait()
            session, created = self._get_or_create(key, source)

        if created:
            try:
                await self._launch(session, audio_index, subtitle_index)
            except asyncio.CancelledError:
                log.info("Launch of session %s cancelled", key)
                self._discard(session, "Transcode request was cancelled")
                raise
            except StreamingError as e:
                self._discard(session, str(e))
                raise
            except Exception as e:
                self._discard(session, str(e))
                raise TranscodeLaunchError(f"Failed to start transcode: {e}") from e
        else:
            log.info("Joining existing session %s (%s)", key, session.state)

        await self._wait_until_ready(session)
        return manifest_url(key)

    async def _prepare_output_dir(self, session: TranscodeSession) -> None:
        """Give the session an empty output directory.

        Anything already there belongs to no live session: leftovers of a
        crashed or finished job.
        """
        output_dir = session.output_dir
        try:
            if output_dir.exists():
                log.info("Removing stale output for session %s", session.key)
                await asyncio.to_thread(shutil.rmtree, output_dir)
            output_dir.mkdir(parents=True)
        except OSError as e:
            raise TranscodeLaunchError(f"Could not prepare output directory {output_dir}: {e}") from e

    async def _launch(
        self,
        session: TranscodeSession,
        audio_index: int | None,
        subtitle_index: int | None,
    ) -> None:
        subtitle = None
        subtitle_position = None
        await self._prepare_output_dir(session)
        if audio_index is not None or subtitle_index is not None:
            info = await asyncio.to_thread(probe_tracks, session.source)
            _, subtitle = validate_selection(info, audio_index, subtitle_index)
            if subtitle is not None:
                subtitle_position = info.subtitle_position(subtitle.index)

        settings = get_settings()
        cmd = build_hls_ffmpeg_cmd(
            str(session.source),
            str(session.output_dir),
            audio_index=audio_index,
            subtitle=subtitle,
            subtitle_position=subtitle_position,
            max_resolution=settings.get("max_resolution", "1080p"),
            quality=settings.get("quality", "high"),
            segment_duration=get_hls_segment_duration(),
        )
        log.info("Starting transcode session %s: %s", session.key, " ".join(cmd))

        try:
            process = await _spawn_ffmpeg(cmd)
        except OSError as e:
            raise TranscodeLaunchError(f"Could not start ffmpeg: {e}") from e

        with self._lock:
            session.process = process
        log.info("Started ffmpeg pid=%s for session %s", process.pid, session.key)
        self._spawn_background_task(self._supervise(session, process))

    async def _wait_until_ready(self, session: TranscodeSession) -> None:
        try:
            await asyncio.wait_for(session.ready.wait(), timeout=self.start_timeout_sec)
        except TimeoutError:
            log.warning(
                "Session %s: no manifest after %.0fs, leaving ffmpeg running",
                session.key,
                self.start_timeout_sec,
            )
            raise TranscodeStartTimeout(
                f"Transcode did not produce a manifest within {self.start_timeout_sec:.0f}s"
            ) from None
        if not session.manifest_seen:
            detail = session.error or "ffmpeg exited before writing a manifest"
            raise TranscodeLaunchError(detail)

    # -----------------------------------------------------------------------
    # Supervision
    # -----------------------------------------------------------------------

    def _spawn_background_task(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    def _mark_ready(self, session: TranscodeSession) -> None:
        with self._lock:
            session.manifest_seen = True
            if session.state == "starting":
                session.state = "ready"
        log.info("Session %s ready", session.key)
        session.ready.set()

    async def _supervise(self, session: TranscodeSession, process: Any) -> None:
        """Drive a session's state from its process: manifest seen, then exit."""
        stderr_task = asyncio.create_task(
            _monitor_ffmpeg_stderr(process, session.key, session.stderr_tail)
        )
        exit_task = asyncio.create_task(process.wait())
        while not exit_task.done():
            if session.manifest_path.exists():
                self._mark_ready(session)
                break
            await asyncio.wait({exit_task}, timeout=_POLL_INTERVAL_SEC)

        returncode = await exit_task
        with contextlib.suppress(asyncio.CancelledError):
            await stderr_task
        if not session.manifest_seen and session.manifest_path.exists():
            self._mark_ready(session)
        await self._on_exit(session, returncode)

    async def _on_exit(self, session: TranscodeSession, returncode: int | None) -> None:
        if session.reaped:
            # Still registered as "stopping": the key is not reused until this is gone
            await asyncio.to_thread(shutil.rmtree, session.output_dir, ignore_errors=True)

        with self._lock:
            if session.reaped or returncode == 0:
                session.state = "ended"
            else:
                session.state = "failed"
                tail = "\n".join(session.stderr_tail[-10:]) or "no output"
                session.error = f"ffmpeg exited with code {returncode}: {tail}"
            if self._sessions.get(session.key) is session:
                del self._sessions[session.key]

        if session.reaped:
            log.info("Session %s stopped and its output removed", session.key)
        elif session.state == "ended":
            log.info("Session %s ended", session.key)
        else:
            log.warning("Session %s failed: %s", session.key, session.error)
        # Output of unreaped sessions stays on disk: clients may still be reading segments
        session.ready.set()
        session.exited.set()

    # -----------------------------------------------------------------------
    # Artifacts
    # -----------------------------------------------------------------------

    def serve_artifact(self, session_key: str, filename: str) -> pathlib.Path:
        """Return the path of a manifest or segment file.

        Backed by the output directory, not the registry, so files stay
        servable after the job has finished.
        """
        if not is_valid_session_key(session_key) or not _ARTIFACT_NAME_RE.fullmatch(filename):
            raise ArtifactNotFound("Unknown session or file")
        path = self.output_root / session_key / filename
        if not path.is_file():
            raise ArtifactNotFound(f"{filename} not found for session {session_key}")
        # Heartbeat for the idle reaper; a plain attribute write, no lock needed
        session = self._sessions.get(session_key)
        if session is not None:
            session.last_access = time.time()
        return path
