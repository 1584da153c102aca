import asyncio
import threading

import httpx

from product_imagery.core.background_removal import BackgroundRemovalRouter
from product_imagery.core.errors import ModelCallError
from product_imagery.core.prompt_templates import SOFT_REPAIR_PROMPT, STRICT_REPAIR_PROMPT
from product_imagery.core.provider_secrets import ProviderSecretResolver
from product_imagery.services import cascade as cascade_module
from product_imagery.services.cascade import CascadeStage, TransparencyCascade
from tests.builders import cutout_png, generated, noise_png, payload, studio_png


class ScriptedRepair:
    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    async def __call__(self, image, prompt):
        self.calls.append((image, prompt))
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def _router(environ=None, handler=None):
    resolver = ProviderSecretResolver(environ=environ or {})
    transport = httpx.MockTransport(handler) if handler else None
    return BackgroundRemovalRouter(resolver, transport=transport)


def _stages(result):
    return [record.stage for record in result.records]


def test_usable_input_passes_at_initial_stage():
    repair = ScriptedRepair()
    cascade = TransparencyCascade(repair, _router())

    result = asyncio.run(cascade.run(payload(cutout_png())))

    assert result.stage == CascadeStage.INITIAL
    assert result.transparency_achieved
    assert repair.calls == []


def test_disabled_cascade_returns_input_untouched():
    original = payload(studio_png())
    cascade = TransparencyCascade(ScriptedRepair(), enabled=False)

    result = asyncio.run(cascade.run(original))

    assert result.stage == CascadeStage.SKIPPED
    assert result.image is original
    assert not result.transparency_achieved


def test_soft_repair_wins_before_strict_is_tried():
    repair = ScriptedRepair(generated(cutout_png(), "soft note"))
    cascade = TransparencyCascade(repair, _router())

    result = asyncio.run(cascade.run(payload(studio_png())))

    assert result.stage == CascadeStage.SOFT_REPAIR
    assert result.image.data == cutout_png()
    assert result.text_notes == ("soft note",)
    assert [prompt for _, prompt in repair.calls] == [SOFT_REPAIR_PROMPT]


def test_strict_repair_runs_on_soft_output():
    original = payload(studio_png())
    soft_output = generated(noise_png())
    repair = ScriptedRepair(soft_output, generated(cutout_png()))
    cascade = TransparencyCascade(repair, _router())

    result = asyncio.run(cascade.run(original))

    assert result.stage == CascadeStage.STRICT_REPAIR
    assert repair.calls[0] == (original, SOFT_REPAIR_PROMPT)
    assert repair.calls[1] == (soft_output.image, STRICT_REPAIR_PROMPT)
    assert _stages(result) == [
        CascadeStage.INITIAL,
        CascadeStage.SOFT_REPAIR,
        CascadeStage.STRICT_REPAIR,
    ]


def test_provider_removal_runs_on_strict_output():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, content=cutout_png(), headers={"content-type": "image/png"})

    strict_output = generated(noise_png(seed=9))
    repair = ScriptedRepair(generated(noise_png()), strict_output)
    cascade = TransparencyCascade(
        repair, _router({"REMOVEBG_API_KEY": "rb-key"}, handler)
    )

    result = asyncio.run(cascade.run(payload(studio_png())))

    assert result.stage == CascadeStage.PROVIDER_REMOVAL
    assert "specialized_background_removal:removebg" in result.text_notes
    assert result.background_removal.applied
    assert result.background_removal.provider == "removebg"
    assert strict_output.image.data in seen[0].content


def test_local_cutout_recovers_when_model_repairs_fail():
    failure = ModelCallError("Gemini request timed out after 120s")
    repair = ScriptedRepair(failure, failure)
    cascade = TransparencyCascade(repair, _router(), local_cutout_enabled=True)

    result = asyncio.run(cascade.run(payload(studio_png())))

    assert result.stage == CascadeStage.LOCAL_CUTOUT
    assert "local_background_cutout" in result.text_notes
    soft, strict = result.records[1], result.records[2]
    assert soft.error == "Gemini request timed out after 120s"
    assert strict.error == "Gemini request timed out after 120s"
    provider = result.records[3]
    assert provider.stage == CascadeStage.PROVIDER_REMOVAL
    assert not provider.attempted
    assert result.records[4].note == "source=original"


def test_pixel_work_runs_off_the_event_loop_thread(monkeypatch):
    loop_thread = []
    worker_threads = []
    real_analyze = cascade_module.analyze_transparency
    real_cutout = cascade_module.apply_border_cutout

    def analyze(data, thresholds):
        worker_threads.append(threading.get_ident())
        return real_analyze(data, thresholds)

    def cutout(image, thresholds):
        worker_threads.append(threading.get_ident())
        return real_cutout(image, thresholds)

    monkeypatch.setattr(cascade_module, "analyze_transparency", analyze)
    monkeypatch.setattr(cascade_module, "apply_border_cutout", cutout)
    failure = ModelCallError("Gemini request timed out after 120s")
    cascade = TransparencyCascade(
        ScriptedRepair(failure, failure), _router(), local_cutout_enabled=True
    )

    async def run():
        loop_thread.append(threading.get_ident())
        return await cascade.run(payload(studio_png()))

    result = asyncio.run(run())

    assert result.stage == CascadeStage.LOCAL_CUTOUT
    assert worker_threads
    assert loop_thread[0] not in worker_threads


def test_unachievable_transparency_returns_the_original():
    original = payload(noise_png())
    repair = ScriptedRepair(generated(noise_png(seed=4)), generated(noise_png(seed=5)))
    cascade = TransparencyCascade(repair, _router(), local_cutout_enabled=True)

    result = asyncio.run(cascade.run(original))

    assert result.stage == CascadeStage.FALLBACK_ORIGINAL
    assert result.image is original
    assert not result.transparency_achieved
    assert _stages(result) == [
        CascadeStage.INITIAL,
        CascadeStage.SOFT_REPAIR,
        CascadeStage.STRICT_REPAIR,
        CascadeStage.PROVIDER_REMOVAL,
        CascadeStage.LOCAL_CUTOUT,
        CascadeStage.FALLBACK_ORIGINAL,
    ]


def test_disabled_local_cutout_is_recorded_as_not_attempted():
    repair = ScriptedRepair(generated(noise_png()), generated(noise_png()))
    cascade = TransparencyCascade(repair, None, local_cutout_enabled=False)

    result = asyncio.run(cascade.run(payload(studio_png())))

    assert result.stage == CascadeStage.FALLBACK_ORIGINAL
    local = result.records[4]
    assert local.stage == CascadeStage.LOCAL_CUTOUT
    assert not local.attempted
    assert local.note == "Local cutout disabled"


def test_result_serializes_stage_records():
    repair = ScriptedRepair(generated(cutout_png()))
    cascade = TransparencyCascade(repair, _router())

    data = asyncio.run(cascade.run(payload(studio_png()))).to_dict()

    assert data["stage"] == "soft_repair"
    assert data["transparency_achieved"] is True
    assert data["records"][0]["analysis"]["has_usable_transparency"] is False
