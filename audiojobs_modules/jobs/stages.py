"""Pipeline stage definitions for audio processing."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, Optional

from audiojobs_modules.errors import TerminalStageError

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .pipeline import AudioPipelineContext


class AudioPipelineStage(ABC):
    """Base class for a pipeline stage."""

    name: str = "stage"
    weight: int = 1

    def describe(self) -> str:
        return self.name

    @abstractmethod
    def run(self, context: "AudioPipelineContext") -> Optional[Dict[str, Any]]:
        """Execute stage and optionally return artifact updates."""


class FetchAudioStage(AudioPipelineStage):
    name = "fetch_audio"
    weight = 2

    def describe(self) -> str:
        return "Скачиваю запись из хранилища"

    def run(self, context: "AudioPipelineContext") -> Optional[Dict[str, Any]]:
        source_path = context.services.fetch(context)
        if not source_path:
            raise TerminalStageError("fetcher did not return a local path")
        return {"source_path": source_path}


class TranscodeAudioStage(AudioPipelineStage):
    name = "transcode_audio"
    weight = 2

    def describe(self) -> str:
        return "Проверяю и конвертирую аудио"

    def run(self, context: "AudioPipelineContext") -> Optional[Dict[str, Any]]:
        source_path = context.artifacts.get("source_path")
        if not source_path:
            raise RuntimeError("Source path is missing; fetch stage must run first.")
        return {"audio_path": context.services.transcode(context, source_path)}


class AnalyzeAudioStage(AudioPipelineStage):
    name = "analyze_audio"
    weight = 5

    def describe(self) -> str:
        return "Транскрибирую и анализирую"

    def run(self, context: "AudioPipelineContext") -> Optional[Dict[str, Any]]:
        audio_path = context.artifacts.get("audio_path")
        if not audio_path:
            raise RuntimeError("Audio path is missing; transcode stage must run first.")
        analysis = context.services.analyze(context, audio_path)
        if not isinstance(analysis, dict):
            raise TerminalStageError("analyzer returned no analysis")
        return {"analysis": analysis}


class PersistResultStage(AudioPipelineStage):
    name = "persist_result"
    weight = 1

    def describe(self) -> str:
        return "Сохраняю результат"

    def run(self, context: "AudioPipelineContext") -> Optional[Dict[str, Any]]:
        analysis = context.artifacts.get("analysis")
        if analysis is None:
            raise RuntimeError("Analysis is missing; analyze stage must run first.")
        context.services.persist(context, analysis)
        return None


class NotifyStage(AudioPipelineStage):
    name = "notify"
    weight = 1

    def describe(self) -> str:
        return "Обновляю статус записи"

    def run(self, context: "AudioPipelineContext") -> Optional[Dict[str, Any]]:
        context.services.notify(context, context.artifacts["analysis"])
        return None


class CleanupStage(AudioPipelineStage):
    name = "cleanup"
    weight = 1

    def describe(self) -> str:
        return "Прибираю временные файлы"

    def run(self, context: "AudioPipelineContext") -> Optional[Dict[str, Any]]:
        context.services.cleanup(context)
        return None


def default_audio_stages() -> list[AudioPipelineStage]:
    """Return default stage pipeline for audio jobs."""
    return [
        FetchAudioStage(),
        TranscodeAudioStage(),
        AnalyzeAudioStage(),
        PersistResultStage(),
        NotifyStage(),
        CleanupStage(),
    ]


__all__ = [
    "AudioPipelineStage",
    "FetchAudioStage",
    "TranscodeAudioStage",
    "AnalyzeAudioStage",
    "PersistResultStage",
    "NotifyStage",
    "CleanupStage",
    "default_audio_stages",
]
