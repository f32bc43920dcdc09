from __future__ import annotations

from types import SimpleNamespace

import pytest

from catalog_admin.bootstrap import CatalogServices
from catalog_admin.config import CompletionSettings
from catalog_admin.services.errors import NotFoundError, UpstreamFailure
from catalog_admin.services.generation import (
    DESCRIPTION_SCHEMA,
    OpenAICompletionClient,
    parse_json_output,
    strip_code_fences,
)


def test_strip_code_fences() -> None:
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences('  {"a": 1} ') == '{"a": 1}'


@pytest.mark.parametrize("text", ["", "not json", "[1, 2]"])
def test_parse_json_output_rejects_unusable_text(text: str) -> None:
    with pytest.raises(UpstreamFailure):
        parse_json_output(text)


def test_generate_and_confirm_description(services: CatalogServices, completion_client) -> None:
    entity_id = services.catalog.add_entity(
        "directors", "Andrei Tarkovsky", hebrew_name="אנדריי טרקובסקי", description="old"
    )
    completion_client.replies.append('```json\n{"description": "Soviet film director."}\n```')

    proposal = services.descriptions.generate("directors", entity_id)

    assert proposal.before == "old"
    assert proposal.after == "Soviet film director."
    assert proposal.name == "Andrei Tarkovsky"
    assert "Andrei Tarkovsky" in completion_client.prompts[0]
    assert completion_client.schemas[0] == DESCRIPTION_SCHEMA
    # Nothing is stored until the operator confirms.
    assert services.catalog.require_entity("directors", entity_id).description == "old"

    services.descriptions.confirm("directors", entity_id, proposal.after)
    assert (
        services.catalog.require_entity("directors", entity_id).description
        == "Soviet film director."
    )


def test_generate_errors(services: CatalogServices, completion_client) -> None:
    with pytest.raises(NotFoundError):
        services.descriptions.generate("films", 99)

    entity_id = services.catalog.add_entity("films", "Solaris")
    completion_client.replies.append('{"description": "   "}')
    with pytest.raises(UpstreamFailure):
        services.descriptions.generate("films", entity_id)


def test_openai_client_requests_json_output() -> None:
    calls = []

    class FakeCompletions:
        def create(self, **kwargs):
            calls.append(kwargs)
            message = SimpleNamespace(content=' {"description": "x"} ')
            return SimpleNamespace(choices=[SimpleNamespace(message=message)])

    fake = SimpleNamespace(chat=SimpleNamespace(completions=FakeCompletions()))
    client = OpenAICompletionClient(CompletionSettings(model="gpt-test"), client=fake)

    assert client.complete("prompt", schema=DESCRIPTION_SCHEMA) == '{"description": "x"}'
    assert calls[0]["model"] == "gpt-test"
    assert calls[0]["response_format"] == {"type": "json_object"}
    assert calls[0]["messages"][-1] == {"role": "user", "content": "prompt"}

    client.complete("plain")
    assert "response_format" not in calls[1]
