import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from audiojobs_modules.config import FFMPEG_TIMEOUT_SEC, MAX_FILE_SIZE_MB, logger
from audiojobs_modules.errors import TerminalStageError, TransientStageError

MAX_DURATION_SECONDS = 7200


@dataclass
class AudioProbe:
    format_name: str
    codec: str
    duration: float
    bitrate: int
    size_bytes: int


async def _run(cmd: list[str], *, timeout: float) -> tuple[int, bytes, bytes]:
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise TerminalStageError(f"{cmd[0]} is not installed") from exc

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        process.kill()
        await process.wait()
        raise TransientStageError(f"{cmd[0]} timed out after {timeout:.0f}s") from exc
    return process.returncode, stdout, stderr


async def probe_audio(path: Path, *, timeout: float = 60) -> AudioProbe:
    """Проверяет файл через ffprobe: должен содержать аудиопоток ненулевой длины."""
    path = Path(path)
    if not path.exists() or path.stat().st_size == 0:
        raise TerminalStageError(f"audio file is empty or missing: {path.name}")

    size = path.stat().st_size
    if size > MAX_FILE_SIZE_MB * 1024 * 1024:
        raise TerminalStageError(f"file too large ({size / 1024 / 1024:.1f} MB, max {MAX_FILE_SIZE_MB} MB)")

    cmd = ['ffprobe', '-v', 'error', '-show_format', '-show_streams', '-of', 'json', str(path)]
    returncode, stdout, stderr = await _run(cmd, timeout=timeout)
    if returncode != 0:
        raise TerminalStageError(f"ffprobe rejected file: {stderr.decode(errors='replace').strip()[:300]}")

    try:
        data = json.loads(stdout.decode() or "{}")
    except ValueError as exc:
        raise TerminalStageError("ffprobe returned invalid JSON") from exc

    streams = data.get("streams") or []
    audio = next((s for s in streams if s.get("codec_type") == "audio"), None)
    if audio is None:
        raise TerminalStageError("no audio stream found")

    fmt = data.get("format") or {}
    try:
        duration = float(fmt.get("duration") or audio.get("duration") or 0)
    except (TypeError, ValueError):
        duration = 0.0
    if duration <= 0:
        raise TerminalStageError("audio duration is 0 seconds")
    if duration > MAX_DURATION_SECONDS:
        raise TerminalStageError(
            f"audio too long ({int(duration // 60)} minutes, max {MAX_DURATION_SECONDS // 60} minutes)"
        )

    probe = AudioProbe(
        format_name=fmt.get("format_name", "unknown"),
        codec=audio.get("codec_name", "unknown"),
        duration=duration,
        bitrate=int(fmt.get("bit_rate") or 0),
        size_bytes=size,
    )
    logger.info(
        f"✅ Аудио валидно: {probe.format_name}/{probe.codec}, {probe.duration:.1f}s",
        extra={"file": path.name},
    )
    return probe


async def transcode_to_mp3(
    source: Path,
    target: Optional[Path] = None,
    *,
    timeout: float = FFMPEG_TIMEOUT_SEC,
) -> Path:
    """Сжимает аудио в моно MP3 16 кГц для отправки в API транскрибации."""
    source = Path(source)
    target = Path(target) if target else source.parent / f"{source.stem}_16k.mp3"
    target.parent.mkdir(parents=True, exist_ok=True)

    cmd = [
        'ffmpeg',
        '-i', str(source),
        '-vn',
        '-acodec', 'mp3',
        '-b:a', '64k',
        '-ar', '16000',
        '-ac', '1',
        '-y',
        str(target),
    ]
    logger.info(f"Запускаю ffmpeg: {' '.join(cmd)}")
    returncode, _, stderr = await _run(cmd, timeout=timeout)
    if returncode != 0:
        raise TerminalStageError(f"ffmpeg failed: {stderr.decode(errors='replace').strip()[-300:]}")

    if not target.exists() or target.stat().st_size == 0:
        raise TerminalStageError("ffmpeg produced an empty file")

    logger.info(f"Аудио сжато: {source.stat().st_size} -> {target.stat().st_size} байт")
    return target


__all__ = ["AudioProbe", "MAX_DURATION_SECONDS", "probe_audio", "transcode_to_mp3"]
