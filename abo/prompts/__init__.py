"""Prompt and message template loader.

Loads Markdown templates from the prompts/ directory and renders them
with Jinja2. Used by the content generators for LLM prompts and offline
emails, and by the owner notifier.
"""

from __future__ import annotations

from pathlib import Path

from jinja2 import BaseLoader, Environment

# Directory containing the .md template files
_PROMPTS_DIR = Path(__file__).parent


def render_prompt(template_name: str, **variables: object) -> str:
    """Load a template and render it with Jinja2 variables.

    Args:
        template_name: Name of the template file (without .md extension).
        **variables: Template variables to inject.

    Returns:
        The rendered text.

    Raises:
        FileNotFoundError: If the template file does not exist.
    """
    path = _PROMPTS_DIR / f"{template_name}.md"
    if not path.exists():
        raise FileNotFoundError(f"Prompt template not found: {path}")

    template_text = path.read_text(encoding="utf-8")

    # Default Undefined renders as empty, so optional {% if %} blocks drop out
    env = Environment(loader=BaseLoader(), keep_trailing_newline=True, trim_blocks=True)
    template = env.from_string(template_text)
    return template.render(**variables)


def render_message(template_name: str, **variables: object) -> tuple[str, str]:
    """Render a message template whose first line is the subject.

    Returns:
        (subject, body) with surrounding whitespace stripped.
    """
    text = render_prompt(template_name, **variables).strip()
    subject, _, body = text.partition("\n")
    return subject.strip(), body.strip()
