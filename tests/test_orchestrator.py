"""Tests for usage_proxy/proxy/orchestrator.py — end-to-end call lifecycle."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import CHAT_TENANT_KEY, TENANT_KEY, UPSTREAM_KEY, make_config
from usage_proxy.config.resolver import ConfigResult
from usage_proxy.logging.audit import trace_id_var
from usage_proxy.proxy.orchestrator import InboundCall, RequestOrchestrator
from usage_proxy.proxy.responses import ProxyError, ProxyResponse

CHAT_PATH = "/v1/chat/completions"


@pytest.fixture
def resolver():
    resolver = AsyncMock()
    resolver.resolve.return_value = ConfigResult(config=make_config(), from_cache=False)
    return resolver


@pytest.fixture
def forwarder(chat_response_body):
    forwarder = AsyncMock()
    forwarder.forward.return_value = ProxyResponse(status_code=200, body=chat_response_body)
    return forwarder


@pytest.fixture
def upload():
    return AsyncMock()


@pytest.fixture
def reporter(upload):
    reporter = MagicMock()
    reporter.uploader.return_value = upload
    return reporter


@pytest.fixture
def orchestrator(resolver, forwarder, reporter):
    return RequestOrchestrator(resolver, forwarder, reporter)


def post_call(body, headers=None, path=CHAT_PATH) -> InboundCall:
    raw = body if isinstance(body, (str, bytes)) else json.dumps(body)
    return InboundCall(method="POST", path=path, headers=headers or {}, body=raw,
                       source_ip="10.0.0.1", user_agent="pytest")


def uploaded_stats(upload):
    upload.assert_awaited_once()
    return upload.call_args.args[0]


class TestPreflight:

    async def test_options_short_circuits(self, orchestrator, resolver, forwarder, reporter):
        result = await orchestrator.handle(InboundCall(method="OPTIONS", path="/anything"))
        assert result.status_code == 200
        assert result.body == {}
        assert result.headers["Access-Control-Allow-Origin"] == "*"
        resolver.resolve.assert_not_called()
        forwarder.forward.assert_not_called()
        reporter.uploader.assert_not_called()


class TestAccessDenied:

    async def test_missing_tenant_key(self, orchestrator, forwarder, reporter, upload, chat_request_body):
        result = await orchestrator.handle(post_call(chat_request_body, {"authorization": UPSTREAM_KEY}))

        assert result.status_code == 403
        assert result.body["error"]["type"] == "access_denied"
        forwarder.forward.assert_not_called()
        # Reported once; the reporter skips it for lack of a tenant key
        reporter.uploader.assert_called_once_with("post", CHAT_PATH, None)
        assert uploaded_stats(upload).error is True

    async def test_chat_key_scope_rejection_reported_under_tenant(self, orchestrator, forwarder, reporter,
                                                                  upload, chat_request_body):
        headers = {"x-up-api-key": CHAT_TENANT_KEY, "authorization": UPSTREAM_KEY}
        result = await orchestrator.handle(post_call(chat_request_body, headers, path="/v1/completions"))

        assert result.status_code == 403
        forwarder.forward.assert_not_called()
        reporter.uploader.assert_called_once_with("post", "/v1/completions", CHAT_TENANT_KEY)
        assert uploaded_stats(upload).error is True

    async def test_bad_upstream_key_reported_under_tenant(self, orchestrator, reporter, upload, chat_request_body):
        headers = {"x-up-api-key": TENANT_KEY, "authorization": "Bearer nope"}
        result = await orchestrator.handle(post_call(chat_request_body, headers))

        assert result.status_code == 403
        reporter.uploader.assert_called_once_with("post", CHAT_PATH, TENANT_KEY)
        upload.assert_awaited_once()


class TestPolicyBlock:

    async def test_blocking_wordlist(self, orchestrator, resolver, forwarder, upload, valid_headers):
        resolver.resolve.return_value = ConfigResult(
            config=make_config(policy_request_wordlist="custom:block", policy_custom_wordlist=["forbidden"]),
            from_cache=True,
        )
        body = {"model": "gpt-3.5-turbo", "messages": [{"role": "user", "content": "the forbidden word"}]}

        result = await orchestrator.handle(post_call(body, valid_headers))

        assert result.status_code == 422
        assert result.body["error"]["type"] == "invalid_request"
        assert "custom wordlist: forbidden" in result.body["error"]["message"]
        forwarder.forward.assert_not_called()
        stats = uploaded_stats(upload)
        assert stats.error is True
        assert len(stats.flags) == 1
        assert stats.config_cached is True

    async def test_header_override_blocks(self, orchestrator, forwarder, upload, valid_headers, chat_request_body):
        headers = {**valid_headers, "x-up-max-tokens": "10"}
        result = await orchestrator.handle(post_call({**chat_request_body, "max_tokens": 50}, headers))
        assert result.status_code == 422
        forwarder.forward.assert_not_called()

    async def test_all_flags_reported(self, orchestrator, resolver, upload, valid_headers):
        resolver.resolve.return_value = ConfigResult(
            config=make_config(policy_disabled_models=["gpt-4"], policy_max_tokens=10),
            from_cache=False,
        )
        body = {"model": "gpt-4", "max_tokens": 100, "messages": [{"role": "user", "content": "hi"}]}
        result = await orchestrator.handle(post_call(body, valid_headers))

        message = result.body["error"]["message"]
        assert "The gpt-4 model is disabled" in message
        assert "exceeds the limit of 10" in message
        assert len(uploaded_stats(upload).flags) == 2


class TestConfigFailure:

    def _failed(self, **config):
        return ConfigResult(
            config=make_config(**config),
            from_cache=False,
            error=ProxyError(500, "server_error", "Usage proxy: error loading config"),
        )

    async def test_fail_closed(self, orchestrator, resolver, forwarder, upload, valid_headers, chat_request_body):
        resolver.resolve.return_value = self._failed()
        result = await orchestrator.handle(post_call(chat_request_body, valid_headers))

        assert result.status_code == 500
        assert result.body["error"]["type"] == "server_error"
        forwarder.forward.assert_not_called()
        assert uploaded_stats(upload).error is True

    async def test_fail_open(self, orchestrator, resolver, forwarder, upload, valid_headers,
                             chat_request_body, chat_response_body):
        resolver.resolve.return_value = self._failed(fail_open_on_config_error=True)
        result = await orchestrator.handle(post_call(chat_request_body, valid_headers))

        assert result.status_code == 200
        assert result.body == chat_response_body
        forwarder.forward.assert_awaited_once()
        assert uploaded_stats(upload).error is False


class TestPassThrough:

    async def test_get_forwarded_verbatim(self, orchestrator, forwarder, reporter, valid_headers):
        listing = {"object": "list", "data": [{"id": "gpt-4"}]}
        forwarder.forward.return_value = ProxyResponse(status_code=200, body=listing)

        result = await orchestrator.handle(InboundCall(method="GET", path="/v1/models", headers=valid_headers))

        assert result.body == listing
        forwarder.forward.assert_awaited_once_with(
            "get", "https://api.openai.com/v1/models", {"authorization": UPSTREAM_KEY},
        )
        reporter.uploader.assert_not_called()

    async def test_get_non_object_body_verbatim(self, orchestrator, forwarder, valid_headers):
        forwarder.forward.return_value = ProxyResponse(status_code=200, body=["a", "b"])
        result = await orchestrator.handle(InboundCall(method="GET", path="/v1/files", headers=valid_headers))
        assert result.body == ["a", "b"]

    async def test_post_non_object_body_skips_post_processors(self, orchestrator, resolver, forwarder,
                                                              upload, valid_headers, chat_request_body):
        resolver.resolve.return_value = ConfigResult(
            config=make_config(policy_response_wordlist="profanity:block"), from_cache=False,
        )
        forwarder.forward.return_value = ProxyResponse(status_code=200, body=["damn"])
        result = await orchestrator.handle(post_call(chat_request_body, valid_headers))
        assert result.status_code == 200
        assert result.body == ["damn"]
        assert uploaded_stats(upload).flags == []

    async def test_get_still_requires_credentials(self, orchestrator, forwarder):
        result = await orchestrator.handle(InboundCall(method="GET", path="/v1/models", headers={}))
        assert result.status_code == 403
        forwarder.forward.assert_not_called()


class TestSuccess:

    async def test_forwards_and_reports(self, orchestrator, resolver, forwarder, reporter, upload,
                                        valid_headers, chat_request_body, chat_response_body):
        result = await orchestrator.handle(post_call(chat_request_body, valid_headers, path="/chat/completions"))

        assert result.status_code == 200
        assert result.body == chat_response_body
        resolver.resolve.assert_awaited_once_with(TENANT_KEY)

        args, kwargs = forwarder.forward.call_args
        assert args == (
            "post", "https://api.openai.com/v1/chat/completions",
            {"authorization": UPSTREAM_KEY}, chat_request_body,
        )
        assert kwargs == {"retries": 0}

        reporter.uploader.assert_called_once_with("post", CHAT_PATH, TENANT_KEY)
        stats = uploaded_stats(upload)
        assert stats.error is False
        assert stats.metadata["ip_address"] == "10.0.0.1"
        assert stats.metadata["user_agent"] == "pytest"
        assert stats.metadata["proxy_id"] == "usage_proxy"
        # Completions are left out of stats unless response logging is on
        assert "choices" not in stats.response

    async def test_organization_and_trace_headers(self, orchestrator, forwarder, upload,
                                                  valid_headers, chat_request_body):
        headers = {**valid_headers, "openai-organization": "org-123", "x-up-trace-id": "trace-abc"}
        await orchestrator.handle(post_call(chat_request_body, headers))

        assert forwarder.forward.call_args.args[2]["OpenAI-Organization"] == "org-123"
        stats = uploaded_stats(upload)
        assert stats.metadata["organization"] == "org-123"
        assert stats.metadata["trace_id"] == "trace-abc"
        assert trace_id_var.get() == "trace-abc"

    async def test_redacted_request_forwarded(self, orchestrator, resolver, forwarder, valid_headers):
        resolver.resolve.return_value = ConfigResult(
            config=make_config(policy_request_wordlist="custom:redact", policy_custom_wordlist=["hunter2"]),
            from_cache=False,
        )
        body = {"model": "gpt-3.5-turbo", "messages": [{"role": "user", "content": "my pass is hunter2"}]}
        await orchestrator.handle(post_call(body, valid_headers))

        sent = forwarder.forward.call_args.args[3]
        assert sent["messages"][0]["content"] == "my pass is ****"

    async def test_response_redacted(self, orchestrator, resolver, forwarder, valid_headers, chat_request_body):
        resolver.resolve.return_value = ConfigResult(
            config=make_config(policy_response_wordlist="profanity:redact"),
            from_cache=False,
        )
        forwarder.forward.return_value = ProxyResponse(
            status_code=200,
            body={"choices": [{"index": 0, "message": {"role": "assistant", "content": "oh damn"}}]},
        )
        result = await orchestrator.handle(post_call(chat_request_body, valid_headers))
        assert result.status_code == 200
        assert result.body["choices"][0]["message"]["content"] == "oh ****"

    async def test_response_block(self, orchestrator, resolver, forwarder, upload, valid_headers, chat_request_body):
        resolver.resolve.return_value = ConfigResult(
            config=make_config(policy_response_wordlist="profanity:block"),
            from_cache=False,
        )
        forwarder.forward.return_value = ProxyResponse(
            status_code=200,
            body={"choices": [{"index": 0, "message": {"role": "assistant", "content": "oh damn"}}]},
        )
        result = await orchestrator.handle(post_call(chat_request_body, valid_headers))
        assert result.status_code == 422
        assert uploaded_stats(upload).error is True

    async def test_retry_count_from_config(self, orchestrator, resolver, forwarder, valid_headers, chat_request_body):
        resolver.resolve.return_value = ConfigResult(config=make_config(policy_retry_count=2), from_cache=False)
        await orchestrator.handle(post_call(chat_request_body, valid_headers))
        assert forwarder.forward.call_args.kwargs == {"retries": 2}


class TestUpstreamError:

    async def test_error_passed_through(self, orchestrator, forwarder, upload, valid_headers, chat_request_body):
        error = {"error": {"message": "Rate limit reached", "type": "requests"}}
        forwarder.forward.return_value = ProxyResponse(status_code=429, body=error, is_error=True)

        result = await orchestrator.handle(post_call(chat_request_body, valid_headers))

        assert result.status_code == 429
        assert result.body == error
        stats = uploaded_stats(upload)
        assert stats.error is True
        assert stats.response == error

    async def test_post_processors_skipped(self, orchestrator, resolver, forwarder, upload,
                                           valid_headers, chat_request_body):
        resolver.resolve.return_value = ConfigResult(
            config=make_config(policy_response_wordlist="profanity:block"),
            from_cache=False,
        )
        forwarder.forward.return_value = ProxyResponse(status_code=500, body={"damn": "it"}, is_error=True)
        result = await orchestrator.handle(post_call(chat_request_body, valid_headers))
        assert result.status_code == 500
        assert uploaded_stats(upload).flags == []


class TestAutoReply:

    async def test_upstream_not_called(self, orchestrator, resolver, forwarder, upload, valid_headers):
        resolver.resolve.return_value = ConfigResult(
            config=make_config(policy_autoreply=[{"type": "chat", "request": "ping", "response": "pong"}]),
            from_cache=False,
        )
        body = {"model": "gpt-4", "messages": [{"role": "user", "content": "ping"}]}

        result = await orchestrator.handle(post_call(body, valid_headers))

        assert result.status_code == 200
        assert result.body["choices"][0]["message"]["content"] == "pong"
        forwarder.forward.assert_not_called()
        stats = uploaded_stats(upload)
        assert stats.autorouted == {"autoreply": True, "type": "chat"}


class TestFailures:

    async def test_invalid_json(self, orchestrator, forwarder, upload, valid_headers):
        result = await orchestrator.handle(post_call("{not json", valid_headers))
        assert result.status_code == 400
        assert result.body["error"]["type"] == "invalid_request"
        forwarder.forward.assert_not_called()
        upload.assert_awaited_once()

    async def test_non_object_body(self, orchestrator, valid_headers):
        result = await orchestrator.handle(post_call("[1, 2]", valid_headers))
        assert result.status_code == 400

    async def test_unexpected_exception_becomes_500(self, orchestrator, resolver, upload, valid_headers,
                                                    chat_request_body):
        resolver.resolve.side_effect = RuntimeError("boom")
        result = await orchestrator.handle(post_call(chat_request_body, valid_headers))
        assert result.status_code == 500
        assert result.body["error"]["type"] == "server_error"
        assert uploaded_stats(upload).error is True

    async def test_processor_error_becomes_500(self, orchestrator, resolver, forwarder, upload,
                                               valid_headers, chat_request_body):
        resolver.resolve.return_value = ConfigResult(
            config=make_config(policy_max_tokens="many"), from_cache=False,
        )
        result = await orchestrator.handle(post_call(chat_request_body, valid_headers))
        assert result.status_code == 500
        forwarder.forward.assert_not_called()
        upload.assert_awaited_once()


class TestLocalMode:

    async def test_tenant_key_not_required(self, override_settings, orchestrator, forwarder, reporter,
                                           chat_request_body):
        override_settings(LOCAL_MODE="true")
        result = await orchestrator.handle(post_call(chat_request_body, {"authorization": UPSTREAM_KEY}))
        assert result.status_code == 200
        forwarder.forward.assert_awaited_once()
        reporter.uploader.assert_called_once_with("post", CHAT_PATH, None)
