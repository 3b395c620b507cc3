"""
Prompt templates for batch classification and reply generation.

Templates are Jinja2 strings rendered with ``trim_blocks``/``lstrip_blocks``.
Email content is sanitized before rendering; user-supplied instructions from
the run request are inserted verbatim.
"""

import json
import logging
from typing import Dict, List, Optional, Sequence

from jinja2 import BaseLoader, Environment, StrictUndefined

from .models import WorkItem
from ..utils.sanitize import ITEM_DELIMITER, sanitize_body, sanitize_subject

logger = logging.getLogger(__name__)

MAX_EMAIL_LENGTH = 1000

STRICT_JSON_INSTRUCTION = (
    "IMPORTANT: Your previous answer could not be parsed. Respond with valid JSON only. "
    "Do not use markdown code fences. Do not add any text before or after the JSON."
)

DEFAULT_TEMPLATES: Dict[str, str] = {
    "batch_classification": """{{ instructions }}

You will receive {{ items|length }} emails separated by the character {{ delimiter }}.
Classify every email independently.
{% if allowed_labels %}
The label MUST be exactly one of: {{ allowed_labels|tojson }}
{% endif %}
Tokens such as [[PII_EMAIL_1]] stand for redacted personal data; treat them as opaque.

Respond with a JSON array containing exactly one object per email, in any order:
[{"id": "<email id>", "label": "<label>", "confidence": 0.0-1.0}]

{% for item in items %}
{{ delimiter }}
ID: {{ item.id }}
Subject: {{ item.subject }}
Body:
{{ item.body }}
{% endfor %}
{{ delimiter }}""",

    "reply": """{{ instructions }}

Write a reply to the email below. It was classified as "{{ label }}".
Tokens such as [[PII_EMAIL_1]] stand for redacted personal data. Copy a token
exactly if the reply needs that value; never invent new tokens.
Keep the reply under {{ max_length }} characters, in plain text, without HTML.

Respond with JSON only:
{"reply": "<reply text>", "tone": "formal|friendly|neutral", "category": "inquiry|complaint|request|feedback|other"}

Subject: {{ subject }}
Body:
{{ body }}""",
}


class PromptEngine:
    """
    Renders the pipeline's prompts.

    Args:
        templates: Optional overrides keyed like ``DEFAULT_TEMPLATES``
        max_email_length: Body truncation applied before rendering
    """

    def __init__(self, templates: Optional[Dict[str, str]] = None, max_email_length: int = MAX_EMAIL_LENGTH):
        self.max_email_length = max_email_length
        self._templates = {**DEFAULT_TEMPLATES, **(templates or {})}
        self._env = Environment(
            loader=BaseLoader(),
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            undefined=StrictUndefined,
        )
        self._env.policies["json.dumps_kwargs"] = {"ensure_ascii": False}

    def render(self, name: str, **context) -> str:
        template = self._env.from_string(self._templates[name])
        return template.render(**context)

    def _clean_item(self, item: WorkItem) -> Dict[str, str]:
        return {
            "id": item.id,
            "subject": sanitize_subject(item.subject) or "(no subject)",
            "body": sanitize_body(item.body[: self.max_email_length]) or "(no body)",
        }

    def build_batch_prompt(
        self,
        instructions: str,
        items: Sequence[WorkItem],
        allowed_labels: Optional[List[str]] = None,
    ) -> str:
        """One prompt covering every item of a batch."""
        return self.render(
            "batch_classification",
            instructions=instructions.strip(),
            items=[self._clean_item(item) for item in items],
            delimiter=ITEM_DELIMITER,
            allowed_labels=allowed_labels or [],
        )

    def build_reply_prompt(
        self,
        instructions: str,
        subject: str,
        body: str,
        label: str,
        max_length: int = 1000,
    ) -> str:
        return self.render(
            "reply",
            instructions=instructions.strip(),
            subject=sanitize_subject(subject) or "(no subject)",
            body=sanitize_body(body[: self.max_email_length]) or "(no body)",
            label=label,
            max_length=max_length,
        )

    @staticmethod
    def with_strict_json(prompt: str, schema: Optional[Dict] = None) -> str:
        """Append the JSON-only instruction used for the retry attempt."""
        suffix = STRICT_JSON_INSTRUCTION
        if schema is not None:
            suffix += "\nThe JSON must match this schema:\n" + json.dumps(schema)
        return f"{prompt}\n\n{suffix}"
