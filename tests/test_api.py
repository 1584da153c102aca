import random

import httpx
import pytest
from fastapi.testclient import TestClient

from product_imagery import config
from product_imagery.core.background_removal import BackgroundRemovalRouter
from product_imagery.core.gemini import GeminiImageClient
from product_imagery.core.provider_secrets import ProviderSecretResolver
from product_imagery.main import app
from product_imagery.routers.images.dependencies import get_pipeline
from product_imagery.services.generation_service import PipelineDependencies
from tests.builders import MemoryStore, cutout_png, gemini_image_response, image_server, studio_png

SECRET = "console-secret"
HEADERS = {"X-App-Secret": SECRET}


def _pipeline(api_key="test-key", store=None, environ=None):
    resolver = ProviderSecretResolver(store, environ=environ or {})
    gemini = httpx.MockTransport(
        lambda request: httpx.Response(200, json=gemini_image_response(cutout_png()))
    )
    return PipelineDependencies(
        client=GeminiImageClient(api_key, transport=gemini),
        resolver=resolver,
        router=BackgroundRemovalRouter(resolver),
        models=["gemini-3-pro-image-preview"],
        fetch_transport=image_server({"/garment.png": studio_png()}),
        upscale_enabled=False,
        rng=random.Random(2),
    )


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(config, "APP_SECRET", SECRET)
    app.dependency_overrides[get_pipeline] = lambda: _pipeline()
    yield TestClient(app)
    app.dependency_overrides.clear()


def _use(pipeline):
    app.dependency_overrides[get_pipeline] = lambda: pipeline


def test_health_is_public(client):
    response = client.get("/api/v1/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_missing_secret_header_is_bad_request(client):
    response = client.get("/api/v1/admin/product-images/config")

    assert response.status_code == 400


def test_wrong_secret_is_forbidden(client):
    response = client.get(
        "/api/v1/admin/product-images/config", headers={"X-App-Secret": "nope"}
    )

    assert response.status_code == 403


def test_unconfigured_secret_is_server_error(client, monkeypatch):
    monkeypatch.setattr(config, "APP_SECRET", None)

    response = client.get("/api/v1/admin/product-images/config", headers=HEADERS)

    assert response.status_code == 500


def test_config_lists_angles_profiles_and_providers(client):
    _use(_pipeline(environ={"CLIPDROP_API_KEY": "cd"}))

    response = client.get("/api/v1/admin/product-images/config", headers=HEADERS)

    body = response.json()
    assert response.status_code == 200
    assert body["generation_configured"] is True
    assert len(body["angles"]) == 6
    assert body["profiles"]
    assert body["background_removal"]["configured_providers"] == ["clipdrop"]


def test_generate_returns_image_and_diagnostics(client):
    response = client.post(
        "/api/v1/admin/product-images/generate",
        headers=HEADERS,
        json={
            "source_image_urls": ["https://cdn.example.com/garment.png"],
            "target_angle": "back",
            "product_name": "Sculpt Bodysuit",
        },
    )

    body = response.json()
    assert response.status_code == 200
    assert body["success"] is True
    assert body["image_base64"]
    assert body["target_angle"] == "back"
    assert body["diagnostics"]["transparency"]["stage"] == "initial"


def test_pipeline_errors_map_to_status_and_code(client):
    _use(_pipeline(api_key=None))

    response = client.post(
        "/api/v1/admin/product-images/generate",
        headers=HEADERS,
        json={"source_image_urls": ["https://cdn.example.com/garment.png"]},
    )

    assert response.status_code == 503
    body = response.json()
    assert body["success"] is False
    assert body["code"] == "MISSING_API_KEY"
    assert body["error"]


def test_variants_endpoint(client):
    response = client.post(
        "/api/v1/admin/product-images/variants",
        headers=HEADERS,
        json={
            "source_image_urls": ["https://cdn.example.com/garment.png"],
            "variant_count": 2,
        },
    )

    body = response.json()
    assert response.status_code == 200
    assert [v["target_angle"] for v in body["variants"]] == [
        "front",
        "front_three_quarter_left",
    ]
    assert body["failures"] == []


def test_enhance_endpoint(client):
    response = client.post(
        "/api/v1/admin/images/enhance",
        headers=HEADERS,
        json={"image_url": "https://cdn.example.com/garment.png", "scale_factor": 2},
    )

    body = response.json()
    assert response.status_code == 200
    assert (body["width"], body["height"]) == (128, 128)
    assert body["transparency_validated"] is False


def test_settings_status_and_update(client):
    store = MemoryStore({"removebg_api_key": "old-rb"})
    _use(_pipeline(store=store))

    status = client.get("/api/v1/admin/settings/ai-providers", headers=HEADERS).json()
    assert status["providers"]["removebg"] == {"configured": True, "source": "remote"}

    response = client.put(
        "/api/v1/admin/settings/ai-providers",
        headers=HEADERS,
        json={
            "removebg_api_key": None,
            "clipdrop_api_key": " new-cd ",
            "provider_order": ["clipdrop", "bogus"],
        },
    )

    body = response.json()
    assert response.status_code == 200
    assert store.writes == [
        {"removebg_api_key": None, "clipdrop_api_key": "new-cd", "provider_order": ["clipdrop"]}
    ]
    assert body["providers"]["removebg"]["configured"] is False
    assert body["providers"]["clipdrop"]["configured"] is True
    assert body["provider_order"] == ["clipdrop"]
    assert "new-cd" not in response.text


def test_blank_keys_are_ignored_on_update(client):
    store = MemoryStore({"removebg_api_key": "keep"})
    _use(_pipeline(store=store))

    client.put(
        "/api/v1/admin/settings/ai-providers",
        headers=HEADERS,
        json={"removebg_api_key": "   "},
    )

    assert store.writes == [{}]
    assert store.values == {"removebg_api_key": "keep"}


def test_settings_update_without_store_is_unavailable(client):
    response = client.put(
        "/api/v1/admin/settings/ai-providers",
        headers=HEADERS,
        json={"clipdrop_api_key": "cd"},
    )

    assert response.status_code == 503
