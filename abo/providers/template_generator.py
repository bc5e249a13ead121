"""Deterministic content generator backed by the Jinja2 email template."""

from __future__ import annotations

from abo.prompts import render_message
from abo.providers.base import ContentGenerator, GenerationRequest
from abo.schemas.actions import GeneratedContent


class TemplateContentGenerator(ContentGenerator):
    """Renders email.md for the request. Needs no network and never times out."""

    name = "template"

    def __init__(self, template_name: str = "email") -> None:
        self._template_name = template_name

    async def generate(self, request: GenerationRequest) -> GeneratedContent:
        subject, body = render_message(self._template_name, **request.template_variables())
        return GeneratedContent(subject=subject, body=body, generator=self.name)
