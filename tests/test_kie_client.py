from __future__ import annotations

from gen_studio.kie_client import build_generate_payload, extract_result_urls, extract_task_id
from gen_studio.models import VideoTask


def test_payload_defaults_and_omits_empty_optionals() -> None:
    task = VideoTask(number="1", prompt="a cat", image_urls=["https://example.com/a.png"])

    payload = build_generate_payload(task)

    assert payload == {
        "prompt": "a cat",
        "imageUrls": ["https://example.com/a.png"],
        "model": "veo3",
        "aspectRatio": "16:9",
        "enableFallback": False,
        "enableTranslation": True,
    }


def test_payload_passes_optionals_and_numeric_seed() -> None:
    task = VideoTask(
        number="1",
        prompt="a cat",
        aspect_ratio="9:16",
        watermark="wm",
        callback_url="https://example.com/cb",
        seeds=" 42 ",
        enable_fallback=True,
        enable_translation=False,
    )

    payload = build_generate_payload(task)

    assert payload["aspectRatio"] == "9:16"
    assert payload["watermark"] == "wm"
    assert payload["callBackUrl"] == "https://example.com/cb"
    assert payload["seeds"] == 42
    assert payload["enableFallback"] is True
    assert payload["enableTranslation"] is False


def test_large_integer_seed_keeps_full_precision() -> None:
    assert build_generate_payload(VideoTask(number="1", prompt="p", seeds="12345678901234567890"))["seeds"] == (
        12345678901234567890
    )
    assert build_generate_payload(VideoTask(number="1", prompt="p", seeds="42.9"))["seeds"] == 42


def test_payload_drops_seed_that_is_not_a_finite_number() -> None:
    for seeds in ["abc", "inf", "nan", ""]:
        task = VideoTask(number="1", prompt="p", seeds=seeds)
        assert "seeds" not in build_generate_payload(task)


def test_extractors_tolerate_malformed_responses() -> None:
    assert extract_task_id({"data": {"taskId": "abc"}}) == "abc"
    assert extract_task_id({"code": 400, "msg": "bad"}) == ""
    assert extract_task_id("oops") == ""
    assert extract_task_id({"data": None}) == ""

    assert extract_result_urls({"response": {"resultUrls": ["u1", "u2"]}}) == ["u1", "u2"]
    assert extract_result_urls({"response": None}) == []
