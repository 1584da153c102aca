"""Escalating transparency repair for generated catalog images."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from product_imagery.config import (
    LOCAL_CUTOUT_ENABLED,
    TRANSPARENCY_PASS_ENABLED,
    logger,
)
from product_imagery.core.background_removal import (
    BackgroundRemovalDiagnostics,
    BackgroundRemovalRouter,
)
from product_imagery.core.cutout import apply_border_cutout
from product_imagery.core.gemini import GeneratedImage
from product_imagery.core.imaging import ImagePayload
from product_imagery.core.prompt_templates import SOFT_REPAIR_PROMPT, STRICT_REPAIR_PROMPT
from product_imagery.core.transparency import (
    DEFAULT_THRESHOLDS,
    TransparencyAnalysis,
    TransparencyThresholds,
    analyze_transparency,
)

RepairFn = Callable[[ImagePayload, str], Awaitable[GeneratedImage]]


def _log(level: int, message: str, **context: Any) -> None:
    """Helper to emit structured logs with contextual metadata."""
    logger.log(level, "%s | context=%s", message, context)


class CascadeStage(str, Enum):
    SKIPPED = "skipped"
    INITIAL = "initial"
    SOFT_REPAIR = "soft_repair"
    STRICT_REPAIR = "strict_repair"
    PROVIDER_REMOVAL = "provider_removal"
    LOCAL_CUTOUT = "local_cutout"
    FALLBACK_ORIGINAL = "transparency_fallback_original"


@dataclass(frozen=True)
class StageRecord:
    stage: CascadeStage
    attempted: bool
    passed: bool
    error: Optional[str] = None
    analysis: Optional[TransparencyAnalysis] = None
    note: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage.value,
            "attempted": self.attempted,
            "passed": self.passed,
            "error": self.error,
            "analysis": self.analysis.to_dict() if self.analysis else None,
            "note": self.note,
        }


@dataclass(frozen=True)
class CascadeResult:
    image: ImagePayload
    stage: CascadeStage
    records: Tuple[StageRecord, ...] = ()
    text_notes: Tuple[str, ...] = ()
    background_removal: Optional[BackgroundRemovalDiagnostics] = None

    @property
    def transparency_achieved(self) -> bool:
        return self.stage not in (CascadeStage.SKIPPED, CascadeStage.FALLBACK_ORIGINAL)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage.value,
            "transparency_achieved": self.transparency_achieved,
            "records": [record.to_dict() for record in self.records],
            "background_removal": (
                self.background_removal.to_dict() if self.background_removal else None
            ),
        }


@dataclass(frozen=True)
class CascadeState:
    """Candidates produced so far. Each transition returns a new state."""

    original: ImagePayload
    soft: Optional[ImagePayload] = None
    strict: Optional[ImagePayload] = None
    records: Tuple[StageRecord, ...] = ()
    text_notes: Tuple[str, ...] = ()
    background_removal: Optional[BackgroundRemovalDiagnostics] = None
    winner: Optional[ImagePayload] = None

    def record(self, entry: StageRecord, **changes: Any) -> "CascadeState":
        return replace(self, records=self.records + (entry,), **changes)


StageFn = Callable[[CascadeState], Awaitable[CascadeState]]


class TransparencyCascade:
    """
    Drive an image through soft repair, strict repair, provider removal and
    local cutout until one output passes the transparency gate.

    The stage table is walked once, so a run always terminates. When nothing
    passes, the original image is returned with stage
    ``transparency_fallback_original``.
    """

    def __init__(
        self,
        repair: RepairFn,
        router: Optional[BackgroundRemovalRouter] = None,
        *,
        enabled: bool = TRANSPARENCY_PASS_ENABLED,
        local_cutout_enabled: bool = LOCAL_CUTOUT_ENABLED,
        thresholds: TransparencyThresholds = DEFAULT_THRESHOLDS,
    ) -> None:
        self.repair = repair
        self.router = router
        self.enabled = enabled
        self.local_cutout_enabled = local_cutout_enabled
        self.thresholds = thresholds

    @property
    def stages(self) -> List[Tuple[CascadeStage, StageFn]]:
        return [
            (CascadeStage.SOFT_REPAIR, self._soft_repair),
            (CascadeStage.STRICT_REPAIR, self._strict_repair),
            (CascadeStage.PROVIDER_REMOVAL, self._provider_removal),
            (CascadeStage.LOCAL_CUTOUT, self._local_cutout),
        ]

    async def _analyze(self, image: ImagePayload) -> TransparencyAnalysis:
        return await asyncio.to_thread(analyze_transparency, image.data, self.thresholds)

    async def run(self, image: ImagePayload) -> CascadeResult:
        if not self.enabled:
            return CascadeResult(
                image=image,
                stage=CascadeStage.SKIPPED,
                records=(StageRecord(CascadeStage.SKIPPED, attempted=False, passed=False),),
            )

        initial = await self._analyze(image)
        state = CascadeState(original=image).record(
            StageRecord(
                CascadeStage.INITIAL,
                attempted=True,
                passed=initial.has_usable_transparency,
                analysis=initial,
            )
        )
        if initial.has_usable_transparency:
            return self._finish(state, image, CascadeStage.INITIAL)

        for stage, transition in self.stages:
            try:
                state = await transition(state)
            except Exception as exc:
                _log(
                    logging.WARNING,
                    "transparency_stage_error",
                    stage=stage.value,
                    error=str(exc),
                )
                state = state.record(
                    StageRecord(
                        stage,
                        attempted=True,
                        passed=False,
                        error=str(exc) or type(exc).__name__,
                    )
                )
                continue

            if state.winner is not None:
                return self._finish(state, state.winner, stage)

        _log(logging.WARNING, "transparency_unachievable", stages=len(state.records))
        state = state.record(
            StageRecord(
                CascadeStage.FALLBACK_ORIGINAL,
                attempted=True,
                passed=False,
                note="No stage produced usable transparency; returning the original image",
            )
        )
        return self._finish(state, image, CascadeStage.FALLBACK_ORIGINAL)

    def _finish(self, state: CascadeState, image: ImagePayload, stage: CascadeStage) -> CascadeResult:
        _log(logging.INFO, "transparency_cascade_complete", stage=stage.value)
        return CascadeResult(
            image=image,
            stage=stage,
            records=state.records,
            text_notes=state.text_notes,
            background_removal=state.background_removal,
        )

    async def _run_repair(
        self,
        state: CascadeState,
        stage: CascadeStage,
        source: ImagePayload,
        prompt: str,
        slot: str,
    ) -> CascadeState:
        generated = await self.repair(source, prompt)
        analysis = await self._analyze(generated.image)
        passed = analysis.has_usable_transparency
        return state.record(
            StageRecord(stage, attempted=True, passed=passed, analysis=analysis),
            text_notes=state.text_notes + tuple(generated.text_notes),
            winner=generated.image if passed else None,
            **{slot: generated.image},
        )

    async def _soft_repair(self, state: CascadeState) -> CascadeState:
        return await self._run_repair(
            state, CascadeStage.SOFT_REPAIR, state.original, SOFT_REPAIR_PROMPT, "soft"
        )

    async def _strict_repair(self, state: CascadeState) -> CascadeState:
        source = state.soft or state.original
        return await self._run_repair(
            state, CascadeStage.STRICT_REPAIR, source, STRICT_REPAIR_PROMPT, "strict"
        )

    async def _provider_removal(self, state: CascadeState) -> CascadeState:
        if self.router is None:
            return state.record(
                StageRecord(
                    CascadeStage.PROVIDER_REMOVAL,
                    attempted=False,
                    passed=False,
                    note="No background removal router available",
                )
            )

        source = state.strict or state.soft or state.original
        outcome = await self.router.remove_background(source)
        if outcome.image is None:
            return state.record(
                StageRecord(
                    CascadeStage.PROVIDER_REMOVAL,
                    attempted=any(not item.skipped for item in outcome.diagnostics.attempts),
                    passed=False,
                    error=outcome.diagnostics.error,
                ),
                background_removal=outcome.diagnostics,
            )

        analysis = await self._analyze(outcome.image)
        passed = analysis.has_usable_transparency
        notes = state.text_notes
        if passed:
            notes = notes + (f"specialized_background_removal:{outcome.provider}",)
        return state.record(
            StageRecord(
                CascadeStage.PROVIDER_REMOVAL,
                attempted=True,
                passed=passed,
                analysis=analysis,
                note=f"provider={outcome.provider}",
            ),
            background_removal=outcome.diagnostics,
            text_notes=notes,
            winner=outcome.image if passed else None,
        )

    async def _local_cutout(self, state: CascadeState) -> CascadeState:
        if not self.local_cutout_enabled:
            return state.record(
                StageRecord(
                    CascadeStage.LOCAL_CUTOUT,
                    attempted=False,
                    passed=False,
                    note="Local cutout disabled",
                )
            )

        for label, candidate in (
            ("strict", state.strict),
            ("soft", state.soft),
            ("original", state.original),
        ):
            if candidate is None:
                continue
            cutout = await asyncio.to_thread(apply_border_cutout, candidate, self.thresholds)
            if cutout is None:
                continue
            return state.record(
                StageRecord(
                    CascadeStage.LOCAL_CUTOUT,
                    attempted=True,
                    passed=True,
                    analysis=await self._analyze(cutout),
                    note=f"source={label}",
                ),
                text_notes=state.text_notes + ("local_background_cutout",),
                winner=cutout,
            )

        return state.record(
            StageRecord(CascadeStage.LOCAL_CUTOUT, attempted=True, passed=False)
        )


__all__ = [
    "CascadeResult",
    "CascadeStage",
    "CascadeState",
    "StageRecord",
    "TransparencyCascade",
]
