"""System prompt assembly for the ask loop.

Prompt texts live as .txt files under templates/ and use {placeholder} fields.
"""

from __future__ import annotations

from pathlib import Path

from code_ask.models.schemas import Resource

TEMPLATES_DIR = Path(__file__).parent / "templates"

_templates: dict[str, str] = {}


def load_prompt(name: str) -> str:
    """Return the text of templates/<name>.txt, read once per process."""
    text = _templates.get(name)
    if text is None:
        text = (TEMPLATES_DIR / f"{name}.txt").read_text(encoding="utf-8").strip()
        _templates[name] = text
    return text


def render_prompt(name: str, /, **fields: str) -> str:
    return load_prompt(name).format(**fields)


def _describe_resource(resource: Resource) -> str:
    text = render_prompt("resource", name=resource.name, path=resource.path)
    if resource.notes:
        text += f"\nNotes: {resource.notes}"
    return text


def build_system_prompt(resources: list[Resource], hint: bool = False) -> str:
    """Render the system prompt for one round.

    ``hint`` appends the search guidance text once the loop has decided the
    model is stuck.
    """
    listing = "\n\n".join(_describe_resource(r) for r in resources)
    prompt = render_prompt("system", resources=listing or "(current directory)")
    if hint:
        prompt += "\n\n" + load_prompt("stuck_hint")
    return prompt
