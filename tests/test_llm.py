from types import SimpleNamespace

import httpx
import openai
import pytest

from blueprint.errors import GenerationFailed
from blueprint.services.llm import LLMClient

URL = "https://api.openai.com/v1/chat/completions"


def _not_found():
    return openai.NotFoundError("model not found", response=httpx.Response(404, request=httpx.Request("POST", URL)),
                                body=None)


def _reply(text):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=text))])


class FakeCompletions:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.models = []
        self.kwargs = []

    def create(self, **kwargs):
        self.models.append(kwargs["model"])
        self.kwargs.append(kwargs)
        out = self.outcomes.pop(0)
        if isinstance(out, Exception):
            raise out
        return out


def _client(completions):
    return LLMClient(client=SimpleNamespace(chat=SimpleNamespace(completions=completions)),
                     model="primary", fallback_model="fallback")


def test_not_found_retries_once_with_fallback():
    completions = FakeCompletions(_not_found(), _reply("plan"))
    assert _client(completions).complete("sys", [{"role": "user", "content": "hi"}], temperature=0.3) == "plan"
    assert completions.models == ["primary", "fallback"]
    assert completions.kwargs[0]["temperature"] == completions.kwargs[1]["temperature"] == 0.3


def test_second_not_found_fails():
    completions = FakeCompletions(_not_found(), _not_found())
    with pytest.raises(GenerationFailed):
        _client(completions).complete("sys", [{"role": "user", "content": "hi"}])
    assert completions.models == ["primary", "fallback"]


def test_other_errors_are_not_retried():
    completions = FakeCompletions(openai.APIConnectionError(request=httpx.Request("POST", URL)))
    with pytest.raises(GenerationFailed):
        _client(completions).complete("sys", [{"role": "user", "content": "hi"}])
    assert completions.models == ["primary"]


def test_empty_content_fails():
    with pytest.raises(GenerationFailed):
        _client(FakeCompletions(_reply(""))).complete("sys", [{"role": "user", "content": "hi"}])


def test_json_mode_sets_response_format():
    completions = FakeCompletions(_reply("{}"))
    _client(completions).complete("sys", [{"role": "user", "content": "hi"}], json_mode=True)
    assert completions.kwargs[0]["response_format"] == {"type": "json_object"}
    assert completions.kwargs[0]["messages"][0] == {"role": "system", "content": "sys"}


def test_offline_without_key():
    llm = LLMClient()
    assert llm.offline
    assert llm.complete("sys", [{"role": "user", "content": "x"}], json_mode=True) == "{}"
    assert llm.complete("sys", [{"role": "user", "content": "Build it"}]).startswith("# Offline Draft")
