import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import yaml
from pydantic import ValidationError

from .models import Template, TemplateDefinitionError, TemplateNotFoundError

logger = logging.getLogger(__name__)

PACKAGED_TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"


def load_template_data(data: Dict[str, Any]) -> Template:
    """
    Validates raw template data against the Template model and performs
    the id checks pydantic cannot express.
    """
    try:
        template = Template.model_validate(data)
    except ValidationError as e:
        raise TemplateDefinitionError(f"Invalid template definition: {e}") from e

    step_ids = set()
    declarations: Dict[str, List[bool]] = {}
    for step in template.steps:
        if step.id in step_ids:
            raise TemplateDefinitionError(f"Duplicate step ID '{step.id}' in template '{template.id}'")
        step_ids.add(step.id)

        ids_in_step = set()
        for field in step.fields:
            if field.id in ids_in_step:
                raise TemplateDefinitionError(
                    f"Duplicate field ID '{field.id}' in step '{step.id}' (template '{template.id}')"
                )
            ids_in_step.add(field.id)
            declarations.setdefault(field.id, []).append(field.shared)

    # Answers are stored flat, so a field id may only repeat across steps
    # when every declaration opts into sharing it.
    for field_id, shared_flags in declarations.items():
        if len(shared_flags) > 1 and not all(shared_flags):
            raise TemplateDefinitionError(
                f"Field ID '{field_id}' is declared on {len(shared_flags)} steps of template "
                f"'{template.id}' without being marked shared"
            )

    known = template.field_ids()
    for step in template.steps:
        for field in step.fields:
            if field.min_length and field.max_length and field.max_length < field.min_length:
                raise TemplateDefinitionError(
                    f"Field '{field.id}' in template '{template.id}' has max_length below min_length"
                )
            if field.depends_on is None:
                continue
            if field.depends_on.field not in known or field.depends_on.field == field.id:
                raise TemplateDefinitionError(
                    f"Field '{field.id}' in template '{template.id}' depends on '{field.depends_on.field}', "
                    f"which is not another field of the template"
                )

    return template


def load_template_from_file(file_path: Union[str, Path]) -> Template:
    """Loads and validates a single template YAML file."""
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise TemplateDefinitionError(f"File not found: {file_path}")
    except yaml.YAMLError as e:
        raise TemplateDefinitionError(f"Error parsing YAML file {file_path}: {e}")

    if data is None:
        raise TemplateDefinitionError(f"YAML file is empty or invalid: {file_path}")

    return load_template_data(data)


class TemplateRegistry:
    """
    Read-only catalogue of reflection templates, keyed by template id.
    Templates never change at runtime; adding a field is a deploy.
    """

    def __init__(self, templates: Iterable[Template]):
        self._templates: Dict[str, Template] = {}
        for template in templates:
            if template.id in self._templates:
                raise TemplateDefinitionError(f"Duplicate template ID found: {template.id}")
            self._templates[template.id] = template

    @classmethod
    def from_directory(cls, directory: Union[str, Path]) -> "TemplateRegistry":
        directory = Path(directory)
        if not directory.is_dir():
            raise FileNotFoundError(f"Template directory not found at {directory}")

        paths = sorted(list(directory.glob("*.yml")) + list(directory.glob("*.yaml")))
        registry = cls(load_template_from_file(p) for p in paths)
        logger.info(f"Loaded {len(registry)} reflection templates from {directory}")
        return registry

    def get_template(self, template_id: str) -> Template:
        try:
            return self._templates[template_id]
        except KeyError:
            raise TemplateNotFoundError(f"Unknown reflection template: {template_id}") from None

    def list_templates(self) -> List[Template]:
        return [self._templates[k] for k in sorted(self._templates)]

    def __contains__(self, template_id: str) -> bool:
        return template_id in self._templates

    def __len__(self) -> int:
        return len(self._templates)


def default_registry(templates_dir: Optional[Union[str, Path]] = None) -> TemplateRegistry:
    """Registry over `templates_dir`, or the templates shipped with the engine."""
    return TemplateRegistry.from_directory(templates_dir or PACKAGED_TEMPLATES_DIR)
