import pytest

from form_content_engine import invoker as invoker_module
from form_content_engine.errors import InvocationFailed
from form_content_engine.invoker import LocalInvoker, VertexAIInvoker, parse_json_response


class FakeResponse:
    def __init__(self, text: str) -> None:
        self.text = text


class FakeModel:
    def __init__(self, model_name: str) -> None:
        self.model_name = model_name
        self.calls: list[tuple[str, object]] = []

    def generate_content(self, prompt, generation_config=None):
        self.calls.append((prompt, generation_config))
        return FakeResponse('```json\n{"title": "Starfall"}\n```')


class RecordingConfig:
    def __init__(self, **kwargs) -> None:
        self.kwargs = kwargs


def test_vertex_invoker_requests_json_output(monkeypatch):
    monkeypatch.setattr(invoker_module.vertexai, "init", lambda **kwargs: None)
    monkeypatch.setattr(invoker_module, "GenerativeModel", FakeModel)
    monkeypatch.setattr(invoker_module, "GenerationConfig", RecordingConfig)

    vertex = VertexAIInvoker(project_id="demo-project", temperature=0.2, max_output_tokens=1024)
    result = vertex.invoke("generate-movie-info", {"idea": "A heist"})

    assert result == {"title": "Starfall"}
    prompt, config = vertex.model.calls[0]
    assert '"idea": "A heist"' in prompt
    assert config.kwargs == {
        "temperature": 0.2,
        "max_output_tokens": 1024,
        "response_mime_type": "application/json",
    }


def test_parse_json_response_rejects_prose():
    assert parse_json_response('```\n{"ok": true}\n```', function_ref="f") == {"ok": True}

    with pytest.raises(InvocationFailed):
        parse_json_response("Sure! Here is your JSON.", function_ref="f")


def test_local_invoker_wraps_errors_and_non_mappings():
    local = LocalInvoker({"boom": lambda payload: 1 / 0, "list": lambda payload: [1]})

    with pytest.raises(InvocationFailed, match="boom failed"):
        local.invoke("boom", {})
    with pytest.raises(InvocationFailed, match="expected a mapping"):
        local.invoke("list", {})
    with pytest.raises(InvocationFailed, match="Unknown function"):
        local.invoke("missing", {})
