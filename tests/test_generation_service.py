import asyncio
import hashlib
import random

import httpx
import pytest

from product_imagery.core.background_removal import BackgroundRemovalRouter
from product_imagery.core.errors import (
    ImagePipelineError,
    MissingApiKeyError,
    MissingSourceImageError,
    QuotaExhaustedError,
    TransparencyValidationError,
)
from product_imagery.core.gemini import GeminiImageClient
from product_imagery.core.imaging import open_image
from product_imagery.core.prompt_templates import (
    ANCHOR_REFERENCE_NOTE,
    MODEL_PROFILES,
    ProductImageAngle,
)
from product_imagery.core.provider_secrets import ProviderSecretResolver
from product_imagery.services.generation_service import (
    EnhanceFallback,
    GenerationRequest,
    PipelineDependencies,
    clamp_max_long_edge,
    clamp_scale_factor,
    clamp_variant_count,
    enhance_image,
    generate_product_image,
    generate_product_image_variants,
    infer_input_fidelity,
    infer_quality,
)
from tests.builders import (
    cutout_png,
    gemini_image_response,
    image_server,
    request_json,
    studio_png,
)

CDN = "https://cdn.example.com"
PRO_MODEL = "gemini-3-pro-image-preview"


class GeminiServer:
    """Serves scripted generateContent responses and records request bodies."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.bodies = []

    def __call__(self, request):
        self.bodies.append(request_json(request))
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, bytes):
            return httpx.Response(200, json=gemini_image_response(response))
        return response()


def quota_response():
    return httpx.Response(
        429, json={"error": {"code": 429, "status": "RESOURCE_EXHAUSTED", "message": "Quota exceeded"}}
    )


def build_deps(gemini=None, routes=None, api_key="test-key", environ=None, removal=None, **overrides):
    resolver = ProviderSecretResolver(environ=environ or {})
    removal_transport = httpx.MockTransport(removal) if removal else None
    options = dict(
        client=GeminiImageClient(
            api_key, transport=httpx.MockTransport(gemini or GeminiServer(cutout_png()))
        ),
        resolver=resolver,
        router=BackgroundRemovalRouter(resolver, transport=removal_transport),
        models=[PRO_MODEL],
        fetch_transport=image_server(routes if routes is not None else {"/garment.png": studio_png()}),
        local_cutout_enabled=False,
        upscale_enabled=False,
        rng=random.Random(5),
    )
    options.update(overrides)
    return PipelineDependencies(**options)


def garment_request(**kwargs):
    return GenerationRequest(source_urls=[f"{CDN}/garment.png"], **kwargs)


def test_generate_product_image_happy_path():
    deps = build_deps()

    result = asyncio.run(
        generate_product_image(
            garment_request(product_name="Sculpt Bodysuit", preferred_profile_id=MODEL_PROFILES[2].id),
            deps,
        )
    )

    assert result.model_used == PRO_MODEL
    assert result.profile is MODEL_PROFILES[2]
    assert result.target_angle == ProductImageAngle.FRONT
    assert "Sculpt Bodysuit" in result.prompt
    assert result.source_image_hash == hashlib.sha256(studio_png()).hexdigest()
    assert result.output_format == "png"
    assert result.quality == "high"
    assert result.input_fidelity == "high"
    assert result.diagnostics["transparency"]["stage"] == "initial"
    assert result.diagnostics["upscaled"] is False
    assert result.diagnostics["attempts"][0]["outcome"] == "success"

    data = result.to_dict()
    assert data["image_base64"] == result.image.base64
    assert data["color_reference_image_hash"] is None


def test_generation_requires_gemini_key():
    deps = build_deps(api_key=None)

    with pytest.raises(MissingApiKeyError) as excinfo:
        asyncio.run(generate_product_image(garment_request(), deps))

    assert excinfo.value.status_code == 503


def test_generation_requires_a_valid_source_url():
    with pytest.raises(MissingSourceImageError):
        asyncio.run(
            generate_product_image(GenerationRequest(source_urls=["not a url"]), build_deps())
        )


def test_unreachable_color_reference_is_dropped():
    gemini = GeminiServer(cutout_png())
    deps = build_deps(gemini=gemini)

    result = asyncio.run(
        generate_product_image(
            garment_request(color_reference_url=f"{CDN}/missing-color.png"), deps
        )
    )

    assert result.color_reference_image_hash is None
    parts = gemini.bodies[0]["contents"][0]["parts"]
    assert len(parts) == 2


def test_color_reference_is_forwarded_and_hashed():
    gemini = GeminiServer(cutout_png())
    routes = {"/garment.png": studio_png(), "/color.png": cutout_png()}
    deps = build_deps(gemini=gemini, routes=routes)

    result = asyncio.run(
        generate_product_image(garment_request(color_reference_url=f"{CDN}/color.png"), deps)
    )

    assert result.color_reference_image_hash == hashlib.sha256(cutout_png()).hexdigest()
    assert len(gemini.bodies[0]["contents"][0]["parts"]) == 4


def test_model_override_is_tried_first():
    gemini = GeminiServer(cutout_png())
    seen_paths = []

    def handler(request):
        seen_paths.append(request.url.path)
        return gemini(request)

    deps = build_deps(gemini=handler, models=None)

    result = asyncio.run(
        generate_product_image(garment_request(model_override="gemini-2.5-flash-image"), deps)
    )

    assert result.model_used == "gemini-2.5-flash-image"
    assert seen_paths[0].endswith("/models/gemini-2.5-flash-image:generateContent")
    assert result.quality == "medium"


def model_not_found_response():
    return httpx.Response(
        404,
        json={
            "error": {
                "code": 404,
                "status": "NOT_FOUND",
                "message": "models/gemini-retired-image is not found for API version v1beta",
            }
        },
    )


def test_missing_model_then_opaque_output_is_soft_repaired():
    gemini = GeminiServer(model_not_found_response, studio_png(), cutout_png())
    deps = build_deps(
        gemini=gemini,
        models=["gemini-retired-image", PRO_MODEL],
        transparency_enabled=True,
    )

    result = asyncio.run(generate_product_image(garment_request(), deps))

    assert result.model_used == PRO_MODEL
    assert [a["outcome"] for a in result.diagnostics["attempts"]] == ["not_found", "success"]
    assert result.diagnostics["transparency"]["stage"] == "soft_repair"
    assert result.image.data == cutout_png()
    assert len(gemini.bodies) == 3


def test_small_output_is_upscaled():
    deps = build_deps(upscale_enabled=True, min_long_edge=128)

    result = asyncio.run(generate_product_image(garment_request(), deps))

    assert result.diagnostics["upscaled"] is True
    assert open_image(result.image.data).size == (128, 128)


def test_variants_share_profile_and_anchor_on_first_success():
    gemini = GeminiServer(cutout_png())
    deps = build_deps(gemini=gemini)

    batch = asyncio.run(generate_product_image_variants(garment_request(), deps, 3, "auto"))

    assert [v.target_angle for v in batch.variants] == [
        ProductImageAngle.FRONT,
        ProductImageAngle.FRONT_THREE_QUARTER_LEFT,
        ProductImageAngle.LEFT_PROFILE,
    ]
    assert {v.profile.id for v in batch.variants} == {batch.profile.id}
    anchored = [
        any(part.get("text") == ANCHOR_REFERENCE_NOTE for part in body["contents"][0]["parts"])
        for body in gemini.bodies
    ]
    assert anchored == [False, True, True]
    assert batch.failures == []
    assert batch.to_dict()["variants"][1]["variant_index"] == 2


def test_front_only_variants():
    batch = asyncio.run(
        generate_product_image_variants(garment_request(), build_deps(), 2, "front_only")
    )

    assert [v.target_angle for v in batch.variants] == [ProductImageAngle.FRONT] * 2


def test_variant_failures_are_recorded():
    gemini = GeminiServer(quota_response, cutout_png())
    deps = build_deps(gemini=gemini)

    batch = asyncio.run(generate_product_image_variants(garment_request(), deps, 2))

    assert batch.variant_indexes == [2]
    assert batch.failures[0].variant_index == 1
    assert batch.failures[0].status == 429
    assert batch.failures[0].code == "RESOURCE_EXHAUSTED"


def test_all_variants_failing_raises_first_error():
    deps = build_deps(gemini=GeminiServer(quota_response))

    with pytest.raises(QuotaExhaustedError):
        asyncio.run(generate_product_image_variants(garment_request(), deps, 2))


def test_variant_inputs_are_clamped():
    assert clamp_variant_count(20) == 8
    assert clamp_variant_count(0) == 1
    assert clamp_variant_count("many") == 1
    assert clamp_scale_factor(9) == 4.0
    assert clamp_scale_factor(1) == 2.0
    assert clamp_scale_factor(None) == 4.0
    assert clamp_max_long_edge(100) == 1024
    assert clamp_max_long_edge(10_000) == 8192


def test_quality_and_fidelity_inference():
    assert infer_quality("gemini-3-pro-image-preview") == "high"
    assert infer_quality("gemini-2.5-flash-image") == "medium"
    assert infer_quality("imagen") == "auto"
    assert infer_input_fidelity("gemini-2.5-flash-image") == "low"


# -------------------------
# HD enhancement
# -------------------------
def test_enhance_without_transparency_expectation():
    deps = build_deps(routes={"/catalog/shot.png": studio_png()})

    result = asyncio.run(enhance_image(f"{CDN}/catalog/shot.png", deps))

    assert (result.width, result.height) == (256, 256)
    assert result.image.mime_type == "image/webp"
    assert result.transparency_validated is False
    assert result.transparency_analysis is None


def test_enhance_generated_asset_validates_transparency():
    deps = build_deps(routes={"/products/generated/front-1.png": cutout_png()})

    result = asyncio.run(
        enhance_image(f"{CDN}/products/generated/front-1.png", deps, scale_factor=2)
    )

    assert result.transparency_validated
    assert result.image.mime_type == "image/png"
    assert (result.width, result.height) == (128, 128)
    assert result.repair_attempts == []


def test_enhance_rejects_invalid_url():
    with pytest.raises(ImagePipelineError) as excinfo:
        asyncio.run(enhance_image("file:///etc/passwd", build_deps()))

    assert excinfo.value.status_code == 400
    assert excinfo.value.code == "INVALID_IMAGE_URL"


def test_enhance_repairs_with_background_provider():
    def removal(request):
        return httpx.Response(200, content=cutout_png(256), headers={"content-type": "image/png"})

    deps = build_deps(
        routes={"/products/generated/front-1.png": studio_png()},
        environ={"REMOVEBG_API_KEY": "rb-key"},
        removal=removal,
    )

    result = asyncio.run(enhance_image(f"{CDN}/products/generated/front-1.png", deps))

    assert result.transparency_validated
    assert result.repair_provider == "removebg"
    assert result.repair_stage == "initial_validation_failed"
    assert result.to_dict()["transparency_repair_applied"] is True


def test_enhance_without_fallback_fails_validation():
    deps = build_deps(routes={"/products/generated/front-1.png": studio_png()})

    with pytest.raises(TransparencyValidationError) as excinfo:
        asyncio.run(enhance_image(f"{CDN}/products/generated/front-1.png", deps))

    assert excinfo.value.status_code == 422
    assert excinfo.value.code == "TRANSPARENCY_VALIDATION_FAILED"


def test_enhance_fallback_requires_gemini():
    deps = build_deps(api_key=None, routes={"/catalog/shot.png": studio_png()})

    with pytest.raises(MissingApiKeyError) as excinfo:
        asyncio.run(
            enhance_image(f"{CDN}/catalog/shot.png", deps, fallback=EnhanceFallback(enabled=True))
        )

    assert excinfo.value.code == "FALLBACK_GENERATION_NOT_CONFIGURED"


def test_enhance_fallback_regenerates_with_inferred_angle():
    gemini = GeminiServer(cutout_png())
    url = f"{CDN}/products/enhanced/sku-back-9.png"
    deps = build_deps(
        gemini=gemini,
        routes={"/products/enhanced/sku-back-9.png": studio_png(), "/garment.png": studio_png()},
    )

    result = asyncio.run(
        enhance_image(
            url,
            deps,
            fallback=EnhanceFallback(enabled=True, source_urls=[f"{CDN}/garment.png"]),
        )
    )

    assert result.transparency_validated
    assert result.fallback_regenerated
    assert result.fallback_reason == "transparency_validation_failed"
    assert result.fallback_model_used == PRO_MODEL
    assert result.fallback_target_angle == ProductImageAngle.BACK
    prompt = gemini.bodies[0]["contents"][0]["parts"][0]["text"]
    assert ProductImageAngle.BACK.instruction in prompt


def test_enhance_fallback_still_opaque_is_bad_gateway():
    deps = build_deps(
        gemini=GeminiServer(studio_png()),
        routes={"/products/generated/front-1.png": studio_png()},
    )

    with pytest.raises(TransparencyValidationError) as excinfo:
        asyncio.run(
            enhance_image(
                f"{CDN}/products/generated/front-1.png",
                deps,
                fallback=EnhanceFallback(enabled=True),
            )
        )

    assert excinfo.value.status_code == 502
    assert excinfo.value.code == "FALLBACK_TRANSPARENCY_VALIDATION_FAILED"
    stages = [item["stage"] for item in excinfo.value.detail["attempts"]]
    assert stages == ["initial_validation_failed", "post_fallback_validation_failed"]
