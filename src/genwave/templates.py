"""
Prompt template store.
"""

from __future__ import annotations

import typing as t
import uuid

import structlog

from genwave.exceptions import TemplateNotFoundError
from genwave.models import Template

log = structlog.get_logger(__name__)

DEFAULT_TEMPLATES: tuple[dict[str, t.Any], ...] = (
    {
        "id": "social_media",
        "name": "Social media clip",
        "description": "Short vertical video made for sharing on social platforms",
        "base_prompt": "Create an eye-catching short video made for sharing on social media.",
        "settings": {"duration": 15, "resolution": "1080x1920", "style": "modern, energetic"},
        "variations": [
            {"suffix": "Use bright colors and fast-paced cuts."},
            {"suffix": "Keep the design minimal and clean."},
            {"suffix": "Include dynamic text animations."},
        ],
    },
    {
        "id": "product_showcase",
        "name": "Product showcase",
        "description": "Presents a product and what makes it stand out",
        "base_prompt": "Showcase the product's features and strengths, highlighting its unique value.",
        "settings": {"duration": 30, "resolution": "1920x1080", "style": "professional, clear"},
        "variations": [
            {"suffix": "Show the product from several angles."},
            {"suffix": "Focus on the product's core feature."},
            {"suffix": "Show the product being used in a real setting."},
        ],
    },
    {
        "id": "tutorial",
        "name": "Tutorial",
        "description": "Step-by-step instructional video",
        "base_prompt": "Create a clear, easy-to-follow tutorial video that teaches a new skill.",
        "settings": {"duration": 60, "resolution": "1920x1080", "style": "clear, structured"},
        "variations": [
            {"suffix": "Explain each step in detail."},
            {"suffix": "Include a hands-on demonstration."},
            {"suffix": "Add key tips and warnings."},
        ],
    },
)


class TemplateStore(t.Protocol):
    def load_template(self, template_id: str) -> Template: ...


class InMemoryTemplateStore:
    """
    Template store backed by a dict, seeded with the built-in templates.
    """

    def __init__(self, *, templates: t.Iterable[Template] | None = None) -> None:
        self._templates: dict[str, Template] = {}
        seed = (
            templates
            if templates is not None
            else (Template.model_validate(data) for data in DEFAULT_TEMPLATES)
        )
        for template in seed:
            self._templates[template.id] = template
        log.debug(event="Loaded templates", template_count=len(self._templates))

    def load_template(self, template_id: str) -> Template:
        """
        Return a template by id.

        Raises
        ------
        TemplateNotFoundError
            If no template has this id.
        """
        template = self._templates.get(template_id)
        if template is None:
            raise TemplateNotFoundError(f"Template not found: {template_id}")
        return template

    def list_templates(self) -> list[Template]:
        return list(self._templates.values())

    def add_template(self, data: dict[str, t.Any]) -> Template:
        """
        Register a custom template.

        Parameters
        ----------
        data : dict[str, typing.Any]
            Template fields; ``id`` is generated when missing.

        Returns
        -------
        Template
            The stored template.
        """
        template = Template.model_validate(
            {"id": f"template_{uuid.uuid4().hex[:12]}", **data, "is_custom": True}
        )
        self._templates[template.id] = template
        log.info(event="Added custom template", template_id=template.id)
        return template

    def __len__(self) -> int:
        return len(self._templates)
