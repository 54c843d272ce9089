import asyncio
import gc
import json

import httpx
import openai
import pytest

from synexa_gateway.errors import ErrorKind, ProviderError
from synexa_gateway.facade import CallState, FeatureCall, IllegalTransition
from synexa_gateway.ledger import AdmissionDenied, Feature
from synexa_gateway.schemas import ChatMessage, ChatRequest, ImageRequest
from test_sync import FakeConnection


def _chat(**kwargs):
    return ChatRequest(messages=[ChatMessage(role="user", content="hello")], **kwargs)


def _server_error():
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    body = {"error": {"message": "upstream exploded", "type": "server_error", "code": None}}
    return openai.APIStatusError("boom", response=httpx.Response(502, request=request, json=body), body=body)


def test_state_machine_rejects_illegal_transitions():
    call = FeatureCall("req_1", "user-1", Feature.CHAT, "synexa-gpt-5.1")
    with pytest.raises(IllegalTransition):
        call.advance(CallState.CALLING)
    call.advance(CallState.DENIED)
    with pytest.raises(IllegalTransition):
        call.advance(CallState.ADMITTED)


def test_successful_call_commits_and_broadcasts(services, repository, make_account):
    make_account(credits=100)
    device = FakeConnection()
    services.broadcaster.register("user-1", device)

    result = asyncio.run(services.facade.execute("user-1", Feature.CHAT, _chat(), "req_ok"))

    body = result.to_response()
    assert body["requestId"] == "req_ok"
    assert body["output"] == {"text": "Hello from the model"}
    assert body["resolvedModel"] == "gpt-4o"
    assert body["usedFallback"] is False
    assert body["isDemo"] is False

    account = repository.get_account("user-1")
    assert account.credits == 99
    assert account.usage["chat"] == 1

    assert device.sent[-1]["type"] == "chat_message"
    assert device.sent[-1]["data"]["requestId"] == "req_ok"


def test_failed_call_releases_reservation(services, repository, make_account, fake_llm):
    make_account(credits=100)
    fake_llm.error = _server_error()
    before = repository.get_account("user-1")

    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(services.facade.execute("user-1", Feature.CHAT, _chat(), "req_fail"))

    assert exc_info.value.error.kind == ErrorKind.SERVER
    assert exc_info.value.error.request_id == "req_fail"
    assert repository.get_account("user-1") == before
    assert services.ledger._holds == {}


def test_denied_call_never_reaches_provider(services, repository, make_account, fake_llm):
    make_account(plan="FREE", credits=1000, chat=50)
    with pytest.raises(AdmissionDenied):
        asyncio.run(services.facade.execute("user-1", Feature.CHAT, _chat(), "req_denied"))
    assert fake_llm.calls == []
    assert repository.get_account("user-1").usage["chat"] == 50


def test_foreign_model_is_redirected_to_default(services, make_account):
    make_account(credits=100)
    result = asyncio.run(
        services.facade.execute("user-1", Feature.CHAT, _chat(model_id="claude-3-opus"), "req_r")
    )
    assert result.resolved.resolved_model == "gpt-4o"
    assert result.resolved.used_fallback is True
    assert result.resolved.requested_model == "claude-3-opus"


def test_model_fallback_is_reported(services, make_account):
    make_account(credits=100)
    services.gateway.available_models = ["gpt-4o-mini"]
    result = asyncio.run(
        services.facade.execute("user-1", Feature.CHAT, _chat(model_id="family-gpt-5.1"), "req_fb")
    )
    body = result.to_response()
    assert body["resolvedModel"] == "gpt-4o-mini"
    assert body["usedFallback"] is True
    assert "fallbackReason" in body


def test_no_usable_model_is_server_error(services, repository, make_account):
    make_account(credits=100)
    services.gateway.available_models = ["whisper-1"]
    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(services.facade.execute("user-1", Feature.CHAT, _chat(), "req_cfg"))
    assert exc_info.value.error.kind == ErrorKind.SERVER
    assert repository.get_account("user-1").credits == 100


def test_image_uses_configured_image_model(services, fake_llm, make_account):
    make_account(credits=100)
    result = asyncio.run(
        services.facade.execute("user-1", Feature.IMAGE, ImageRequest(prompt="a lighthouse"), "req_img")
    )
    assert result.resolved.resolved_model == "dall-e-3"
    assert fake_llm.calls[0]["kind"] == "image"


def test_concurrent_requests_with_exact_credits(services, repository, make_account, fake_llm):
    k = 5
    make_account(plan="PRO_MONTHLY", credits=k)
    fake_llm.delay = 0.05

    async def run(count):
        return await asyncio.gather(
            *[services.facade.execute("user-1", Feature.CHAT, _chat(), f"req_{i}") for i in range(count)],
            return_exceptions=True,
        )

    results = asyncio.run(run(k + 1))
    denied = [r for r in results if isinstance(r, AdmissionDenied)]
    assert len(denied) == 1
    assert repository.get_account("user-1").credits == 0
    assert repository.get_account("user-1").usage["chat"] == k


def test_cancelled_call_releases_reservation(services, repository, make_account, fake_llm):
    make_account(credits=100)
    fake_llm.delay = 5

    async def run():
        task = asyncio.ensure_future(services.facade.execute("user-1", Feature.CHAT, _chat(), "req_c"))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(run())
    assert services.ledger._holds == {}
    assert repository.get_account("user-1").credits == 100


def _frames(generator):
    async def run():
        return [frame async for frame in generator]
    return asyncio.run(run())


def _parse(frames):
    return [frame[len("data: "):].strip() for frame in frames]


def test_stream_commits_once_at_completion(services, repository, make_account):
    make_account(credits=100)
    frames = _parse(_frames(services.facade.open_chat_stream("user-1", _chat(stream=True), "req_s")))

    assert frames[-1] == "[DONE]"
    chunks = [json.loads(f)["content"] for f in frames[:-2]]
    assert "".join(chunks) == "Hello there"
    final = json.loads(frames[-2])
    assert final["done"] is True
    assert final["requestId"] == "req_s"
    assert repository.get_account("user-1").credits == 99


def test_stream_failure_reports_error_and_releases(services, repository, make_account, fake_llm):
    make_account(credits=100)
    fake_llm.error = _server_error()
    frames = _parse(_frames(services.facade.open_chat_stream("user-1", _chat(stream=True), "req_sf")))
    error = json.loads(frames[0])["error"]
    assert error["type"] == "SERVER"
    assert error["requestId"] == "req_sf"
    assert frames[-1] == "[DONE]"
    assert repository.get_account("user-1").credits == 100
    assert services.ledger._holds == {}


def test_stream_denial_raises_before_streaming(services, make_account):
    make_account(credits=0)
    with pytest.raises(AdmissionDenied):
        services.facade.open_chat_stream("user-1", _chat(stream=True), "req_sd")


def test_soft_demo_fallback_is_not_charged(tmp_path, repository, clock, fake_llm, make_account):
    from conftest import make_settings
    from synexa_gateway.services import build_services

    settings = make_settings(tmp_path, allow_demo_fallback=True)
    services = build_services(settings, llm_client=fake_llm, repository=repository, clock=clock)
    make_account(credits=100)
    fake_llm.error = _server_error()

    result = asyncio.run(services.facade.execute("user-1", Feature.CHAT, _chat(), "req_soft"))

    assert result.output.is_demo is True
    assert result.to_response()["fallbackReason"].startswith("SERVER")
    assert repository.get_account("user-1").credits == 100
    assert services.ledger._holds == {}


def test_unstarted_stream_releases_hold_on_close(services, make_account):
    make_account(credits=1)
    stream = services.facade.open_chat_stream("user-1", _chat(stream=True), "req_unstarted")
    with pytest.raises(AdmissionDenied):
        services.ledger.check_and_reserve("user-1", Feature.CHAT)

    asyncio.run(stream.close())

    assert services.ledger._holds == {}
    services.ledger.check_and_reserve("user-1", Feature.CHAT)


def test_dropped_stream_hold_expires(services, make_account, clock):
    make_account(credits=1)
    stream = services.facade.open_chat_stream("user-1", _chat(stream=True), "req_dropped")
    del stream
    gc.collect()
    with pytest.raises(AdmissionDenied):
        services.ledger.check_and_reserve("user-1", Feature.CHAT)

    clock.advance(seconds=services.settings.ledger_hold_ttl_seconds + 1)
    services.ledger.check_and_reserve("user-1", Feature.CHAT)


def test_close_after_finished_stream_keeps_charge(services, repository, make_account):
    make_account(credits=100)
    stream = services.facade.open_chat_stream("user-1", _chat(stream=True), "req_done")
    _frames(stream)
    asyncio.run(stream.close())
    assert repository.get_account("user-1").credits == 99
    assert services.ledger._holds == {}


def test_refresh_models_resolves_default_chat_model(services):
    resolved = asyncio.run(services.facade.refresh_models())
    assert resolved.resolved_model == "gpt-4o"
    assert resolved.used_fallback is False
    assert services.facade.configuration_error is None


def test_refresh_models_reports_default_fallback(services, fake_llm):
    fake_llm.models = ["gpt-4o-mini", "dall-e-3"]
    resolved = asyncio.run(services.facade.refresh_models())
    assert resolved.resolved_model == "gpt-4o-mini"
    assert resolved.used_fallback is True
    assert services.facade.default_resolution == resolved


def test_refresh_models_flags_configuration_error(services, fake_llm):
    fake_llm.models = ["whisper-1", "tts-1"]
    assert asyncio.run(services.facade.refresh_models()) is None
    assert services.facade.default_resolution is None
    assert services.facade.configuration_error


def test_refresh_models_in_demo_mode(demo_services):
    assert asyncio.run(demo_services.facade.refresh_models()) is None
    assert demo_services.facade.configuration_error is None
