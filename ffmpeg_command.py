"""FFmpeg command building and track probing."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

import json
import logging
import pathlib
import subprocess
import tempfile

from errors import InvalidTrackSelection, ProbeError


log = logging.getLogger(__name__)

TrackKind = Literal["audio", "subtitle"]

# Timing constants
_DEFAULT_SEGMENT_DURATION_SEC = 4
_DEFAULT_PROBE_TIMEOUT_SEC = 30

# Output file naming
SEG_PREFIX = "seg"  # Segment files are named seg000.ts, seg001.ts, etc.
MANIFEST_NAME = "stream.m3u8"

# Rendered by the subtitles filter (libass); everything else is a picture
TEXT_SUBTITLE_CODECS = {
    "subrip",
    "ass",
    "ssa",
    "mov_text",
    "webvtt",
    "srt",
    "text",
}

# Max resolution height by setting
_MAX_RES_HEIGHT: dict[str, int] = {
    "4k": 2160,
    "1080p": 1080,
    "720p": 720,
    "480p": 480,
}

# Quality presets -> CRF values (lower = higher quality)
_QUALITY_CRF: dict[str, int] = {"high": 20, "medium": 26, "low": 32}

_LANG_NAMES = {
    "eng": "English",
    "spa": "Spanish",
    "fre": "French",
    "fra": "French",
    "ger": "German",
    "deu": "German",
    "por": "Portuguese",
    "ita": "Italian",
    "jpn": "Japanese",
    "kor": "Korean",
    "chi": "Chinese",
    "zho": "Chinese",
    "ara": "Arabic",
    "rus": "Russian",
    "und": "Unknown",
}

# Module state
_load_settings: Callable[[], dict[str, Any]] = dict


@dataclass(slots=True)
class TrackDescriptor:
    index: int  # global stream index within the container
    kind: TrackKind
    lang: str
    title: str
    codec: str
    default: bool = False

    @property
    def is_text(self) -> bool:
        return self.codec in TEXT_SUBTITLE_CODECS

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class TrackInfo:
    audio: list[TrackDescriptor] = field(default_factory=list)
    subtitles: list[TrackDescriptor] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "audio": [t.to_dict() for t in self.audio],
            "subtitles": [t.to_dict() for t in self.subtitles],
        }

    def find_audio(self, index: int) -> TrackDescriptor | None:
        return next((t for t in self.audio if t.index == index), None)

    def subtitle_position(self, index: int) -> int | None:
        """Position of a subtitle among subtitle streams only (for the si= option)."""
        for pos, track in enumerate(self.subtitles):
            if track.index == index:
                return pos
        return None


def init(load_settings: Callable[[], dict[str, Any]]) -> None:
    """Initialize module with settings loader."""
    global _load_settings
    _load_settings = load_settings


def get_settings() -> dict[str, Any]:
    """Get current settings."""
    return _load_settings()


def get_hls_segment_duration() -> int:
    """Get HLS segment duration in seconds."""
    return int(get_settings().get("segment_duration_secs", _DEFAULT_SEGMENT_DURATION_SEC))


def get_transcode_dir() -> pathlib.Path:
    """Get the transcode output root, creating it if needed."""
    custom_dir = get_settings().get("transcode_dir", "")
    path = (
        pathlib.Path(custom_dir)
        if custom_dir
        else pathlib.Path(tempfile.gettempdir()) / "vidvault_transcode"
    )
    path.mkdir(parents=True, exist_ok=True)
    return path


# ===========================================================================
# Probing
# ===========================================================================


def _lang_display_name(code: str) -> str:
    return _LANG_NAMES.get(code, code.upper())


def _track_from_stream(stream: dict[str, Any], kind: TrackKind) -> TrackDescriptor:
    tags = stream.get("tags") or {}
    lang = (tags.get("language") or "und").lower()
    title = tags.get("title") or tags.get("name") or _lang_display_name(lang)
    disposition = stream.get("disposition") or {}
    return TrackDescriptor(
        index=int(stream["index"]),
        kind=kind,
        lang=lang,
        title=title,
        codec=(stream.get("codec_name") or "").lower(),
        default=bool(disposition.get("default", 0)),
    )


def probe_tracks(path: str | pathlib.Path) -> TrackInfo:
    """Probe a media file for its audio and subtitle streams.

    Raises ProbeError if the file can't be read or isn't a container ffprobe
    recognizes.
    """
    timeout = get_settings().get("probe_timeout_secs", _DEFAULT_PROBE_TIMEOUT_SEC)
    cmd = [
        "ffprobe",
        "-v",
        "quiet",
        "-print_format",
        "json",
        "-show_streams",
        "-show_format",
        str(path),
    ]
    log.debug("Probing: %s", " ".join(cmd))
    try:
        result = subprocess.run(
            cmd,
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise ProbeError(f"Probe timed out after {timeout}s") from e
    except OSError as e:
        raise ProbeError(f"Could not run ffprobe: {e}") from e

    if result.returncode != 0:
        raise ProbeError(f"Unreadable or unrecognized media file (ffprobe exit {result.returncode})")
    try:
        data = json.loads(result.stdout or "{}")
    except ValueError as e:
        raise ProbeError("ffprobe returned invalid JSON") from e

    streams = data.get("streams") or []
    if not data.get("format") or not streams:
        raise ProbeError("Not a recognized media container")

    info = TrackInfo()
    for stream in streams:
        if stream.get("index") is None:
            continue
        codec_type = stream.get("codec_type", "")
        if codec_type == "audio":
            info.audio.append(_track_from_stream(stream, "audio"))
        elif codec_type == "subtitle":
            info.subtitles.append(_track_from_stream(stream, "subtitle"))
    log.info(
        "Probe %s: audio=%s subs=%s",
        pathlib.Path(path).name,
        ",".join(f"{t.index}:{t.lang}" for t in info.audio) or "none",
        ",".join(f"{t.index}:{t.lang}/{t.codec}" for t in info.subtitles) or "none",
    )
    return info


def validate_selection(
    info: TrackInfo,
    audio_index: int | None,
    subtitle_index: int | None,
) -> tuple[TrackDescriptor | None, TrackDescriptor | None]:
    """Look up the selected tracks, raising InvalidTrackSelection on unknown indices."""
    audio = None
    subtitle = None
    if audio_index is not None:
        audio = info.find_audio(audio_index)
        if audio is None:
            raise InvalidTrackSelection(f"No audio stream with index {audio_index}")
    if subtitle_index is not None:
        subtitle = next((t for t in info.subtitles if t.index == subtitle_index), None)
        if subtitle is None:
            raise InvalidTrackSelection(f"No subtitle stream with index {subtitle_index}")
    return audio, subtitle


# ===========================================================================
# FFmpeg Command Building
# ===========================================================================


def _escape_filter_path(path: str) -> str:
    """Escape a path for use as a filter option value inside a filtergraph."""
    escaped = path.replace("\\", "/")
    # Option value level, then filtergraph description level
    for ch in ("\\", "'", ":"):
        escaped = escaped.replace(ch, "\\" + ch)
    for ch in ("\\", "'", "[", "]", ",", ";"):
        escaped = escaped.replace(ch, "\\" + ch)
    return escaped


def _build_video_args(
    *,
    input_path: str,
    subtitle: TrackDescriptor | None,
    subtitle_position: int | None,
    max_resolution: str,
    quality: str,
    segment_duration: int,
) -> list[str]:
    """Build video mapping, filter and encoder args."""
    max_h = _MAX_RES_HEIGHT.get(max_resolution, 1080)
    scale = f"scale=-2:'min({max_h},ih)'"

    if subtitle is not None and not subtitle.is_text:
        # Picture subtitles are overlaid from their global stream index
        graph = f"[0:v:0][0:{subtitle.index}]overlay,{scale},format=yuv420p[v]"
        args = ["-filter_complex", graph, "-map", "[v]"]
    else:
        vf = [scale]
        if subtitle is not None:
            # subtitles filter counts subtitle streams only, not global indices
            vf.append(f"subtitles=filename={_escape_filter_path(input_path)}:si={subtitle_position}")
        vf.append("format=yuv420p")
        args = ["-map", "0:v:0", "-vf", ",".join(vf)]

    crf = _QUALITY_CRF.get(quality, _QUALITY_CRF["high"])
    args.extend(
        [
            "-c:v",
            "libx264",
            "-preset",
            "veryfast",
            "-crf",
            str(crf),
            "-profile:v",
            "high",
            "-sc_threshold",
            "0",
            "-force_key_frames",
            f"expr:gte(t,n_forced*{segment_duration})",
        ]
    )
    return args


def _build_audio_args(audio_index: int | None) -> list[str]:
    """Build audio mapping and encoder args."""
    mapping = f"0:{audio_index}" if audio_index is not None else "0:a:0?"
    return ["-map", mapping, "-c:a", "aac", "-ac", "2", "-ar", "48000", "-b:a", "192k"]


def build_hls_ffmpeg_cmd(
    input_path: str,
    output_dir: str,
    audio_index: int | None = None,
    subtitle: TrackDescriptor | None = None,
    subtitle_position: int | None = None,
    max_resolution: str = "1080p",
    quality: str = "high",
    segment_duration: int = _DEFAULT_SEGMENT_DURATION_SEC,
) -> list[str]:
    """Build ffmpeg command that segments input_path into HLS under output_dir.

    The manifest is always the last argument.
    """
    if subtitle is not None and subtitle.is_text and subtitle_position is None:
        raise ValueError("subtitle_position is required for text subtitles")

    cmd = [
        "ffmpeg",
        "-hide_banner",
        "-loglevel",
        "error",
        "-nostdin",
        "-y",
        "-fflags",
        "+genpts",
        "-i",
        input_path,
    ]
    cmd.extend(
        _build_video_args(
            input_path=input_path,
            subtitle=subtitle,
            subtitle_position=subtitle_position,
            max_resolution=max_resolution,
            quality=quality,
            segment_duration=segment_duration,
        )
    )
    cmd.extend(_build_audio_args(audio_index))
    cmd.extend(
        [
            "-f",
            "hls",
            "-hls_time",
            str(segment_duration),
            "-hls_list_size",
            "0",
            "-hls_playlist_type",
            "event",
            # temp_file: the manifest appears atomically, never half-written
            "-hls_flags",
            "independent_segments+temp_file",
            "-hls_segment_filename",
            f"{output_dir}/{SEG_PREFIX}%03d.ts",
            f"{output_dir}/{MANIFEST_NAME}",
        ]
    )
    return cmd
