"""AI-assisted entity descriptions backed by a text/JSON completion service."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from openai import OpenAI, OpenAIError

from ..config import CompletionSettings
from .catalog import CatalogRepository, resolve_entity_type
from .errors import NotFoundError, UpstreamFailure, ValidationError


LOGGER = logging.getLogger(__name__)

DESCRIPTION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {"description": {"type": "string"}},
    "required": ["description"],
}

_DESCRIPTION_PROMPT = (
    "Write a short encyclopedic description of the {label} {display}.\n"
    "Keep it factual and under 120 words.\n"
    'Respond with a JSON object of the form {{"description": "..."}}.'
)

_FENCE_PATTERN = re.compile(r"^\s*```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)


class CompletionClient(Protocol):
    def complete(self, prompt: str, *, schema: Optional[Dict[str, Any]] = None) -> str:
        ...


class OpenAICompletionClient:
    """Chat-completions client; requests JSON output when a schema is given."""

    def __init__(self, settings: CompletionSettings, *, client: Optional[OpenAI] = None) -> None:
        self._settings = settings
        self._client = client

    def _get_client(self) -> OpenAI:
        if self._client is None:
            try:
                self._client = OpenAI(api_key=self._settings.api_key)
            except OpenAIError as error:
                raise UpstreamFailure(str(error)) from error
        return self._client

    def complete(self, prompt: str, *, schema: Optional[Dict[str, Any]] = None) -> str:
        messages = [{"role": "user", "content": prompt}]
        if schema is not None:
            messages.insert(
                0,
                {
                    "role": "system",
                    "content": "Reply with JSON matching this schema: " + json.dumps(schema),
                },
            )
        extra: Dict[str, Any] = {}
        if schema is not None:
            extra["response_format"] = {"type": "json_object"}
        LOGGER.debug("Requesting completion from %s", self._settings.model)
        try:
            response = self._get_client().chat.completions.create(
                model=self._settings.model,
                messages=messages,
                temperature=self._settings.temperature,
                max_tokens=self._settings.max_output_tokens,
                **extra,
            )
        except OpenAIError as error:
            raise UpstreamFailure(str(error)) from error
        if not response.choices:
            return ""
        return (response.choices[0].message.content or "").strip()


def strip_code_fences(text: str) -> str:
    """Remove a surrounding Markdown code fence, if present."""

    match = _FENCE_PATTERN.match(text or "")
    if match:
        return match.group(1).strip()
    return (text or "").strip()


def parse_json_output(text: str) -> Dict[str, Any]:
    cleaned = strip_code_fences(text)
    if not cleaned:
        raise UpstreamFailure("Completion service returned no output")
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as error:
        raise UpstreamFailure(f"Completion service returned malformed JSON: {error}") from error
    if not isinstance(parsed, dict):
        raise UpstreamFailure("Completion service returned JSON that is not an object")
    return parsed


@dataclass
class DescriptionProposal:
    entity_type: str
    entity_id: int
    name: str
    before: str
    after: str


class DescriptionGenerator:
    """Propose entity descriptions and store the ones an operator accepts."""

    def __init__(self, catalog: CatalogRepository, client: CompletionClient) -> None:
        self._catalog = catalog
        self._client = client

    def generate(self, entity_type: str, entity_id: int) -> DescriptionProposal:
        info = resolve_entity_type(entity_type)
        entity = self._catalog.get_entity(info.key, entity_id)
        if entity is None:
            raise NotFoundError("Entity not found")

        display = (
            f"{entity.hebrew_name} ({entity.display_name})"
            if entity.hebrew_name
            else entity.display_name
        )
        label = info.key[:-1] if info.key.endswith("s") else info.key
        prompt = _DESCRIPTION_PROMPT.format(label=label, display=display)

        text = self._client.complete(prompt, schema=DESCRIPTION_SCHEMA)
        payload = parse_json_output(text)
        description = payload.get("description")
        if not isinstance(description, str) or not description.strip():
            raise UpstreamFailure("Completion service returned an empty description")

        LOGGER.info("Generated description for %s #%s", info.key, entity_id)
        return DescriptionProposal(
            entity_type=info.key,
            entity_id=entity.id,
            name=entity.display_name,
            before=entity.description or "",
            after=description.strip(),
        )

    def confirm(self, entity_type: str, entity_id: int, description: str) -> None:
        info = resolve_entity_type(entity_type)
        if description is None:
            raise ValidationError("description is required")
        self._catalog.update_entity(info.key, entity_id, description=description)
        LOGGER.info("Stored accepted description for %s #%s", info.key, entity_id)


__all__ = [
    "CompletionClient",
    "DESCRIPTION_SCHEMA",
    "DescriptionGenerator",
    "DescriptionProposal",
    "OpenAICompletionClient",
    "parse_json_output",
    "strip_code_fences",
]
