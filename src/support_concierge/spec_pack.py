from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "general"


class Category(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    description: str = ""
    keywords: list[str] = Field(default_factory=list)


class RequiredField(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    description: str = ""
    weight: int = Field(default=10, ge=0)
    optional: bool = False
    aliases: list[str] = Field(default_factory=list)
    question: str = ""


class CategoryChecklist(BaseModel):
    model_config = ConfigDict(extra="ignore")

    category: str = ""
    completeness_threshold: int = Field(default=70, ge=0, le=100)
    required_fields: list[RequiredField] = Field(default_factory=list)


class ValidatorRules(BaseModel):
    model_config = ConfigDict(extra="ignore")

    junk_patterns: list[str] = Field(default_factory=list)
    format_validators: dict[str, str] = Field(default_factory=dict)
    secret_patterns: list[str] = Field(default_factory=list)


class CategoryRoute(BaseModel):
    model_config = ConfigDict(extra="ignore")

    category: str
    labels: list[str] = Field(default_factory=list)
    assignees: list[str] = Field(default_factory=list)


class RoutingRules(BaseModel):
    model_config = ConfigDict(extra="ignore")

    routes: list[CategoryRoute] = Field(default_factory=list)
    escalation_labels: list[str] = Field(default_factory=list)
    escalation_mentions: list[str] = Field(default_factory=list)


class SpecPack(BaseModel):
    """Static triage configuration: categories, checklists, validators and routing."""

    model_config = ConfigDict(extra="ignore")

    categories: list[Category] = Field(default_factory=list)
    checklists: dict[str, CategoryChecklist] = Field(default_factory=dict)
    validators: ValidatorRules = Field(default_factory=ValidatorRules)
    routing: RoutingRules = Field(default_factory=RoutingRules)

    def category_names(self) -> list[str]:
        return [item.name for item in self.categories]

    def normalize_category(self, name: str) -> str:
        """Map a free-form category to a configured one, falling back to the default."""
        key = name.strip().lower()
        for category in self.categories:
            if category.name.lower() == key:
                return category.name
        return DEFAULT_CATEGORY

    def checklist_for(self, category: str) -> CategoryChecklist:
        key = category.strip().lower()
        for name, checklist in self.checklists.items():
            if name.lower() == key:
                return checklist
        if DEFAULT_CATEGORY in self.checklists:
            return self.checklists[DEFAULT_CATEGORY]
        return CategoryChecklist(category=category)

    def route_for(self, category: str) -> CategoryRoute | None:
        key = category.strip().lower()
        for route in self.routing.routes:
            if route.category.lower() == key:
                return route
        return None


def default_spec_pack_path() -> Path:
    """Return the package-relative path of the bundled spec pack."""
    return Path(__file__).resolve().parent / "spec_packs" / "default.yaml"


def load_spec_pack(path: Path | None = None) -> SpecPack:
    """Load and validate a spec pack YAML file.

    Args:
        path: YAML file to load. The bundled default is used when None.

    Returns:
        Validated SpecPack. Checklist entries inherit their category from the mapping key.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML is malformed or does not match the schema.
    """
    source = path if path is not None else default_spec_pack_path()
    if not source.is_file():
        raise FileNotFoundError(f"Spec pack not found: {source}")
    try:
        raw = yaml.safe_load(source.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ValueError(f"Spec pack {source} is not valid YAML: {exc}") from exc
    if not isinstance(raw, dict):
        raise ValueError(f"Spec pack {source} must contain a mapping at the top level")
    try:
        pack = SpecPack.model_validate(raw)
    except ValidationError as exc:
        raise ValueError(f"Spec pack {source} failed validation: {exc}") from exc
    for name, checklist in pack.checklists.items():
        if not checklist.category:
            checklist.category = name
    logger.debug("Loaded spec pack %s with %d categories", source, len(pack.categories))
    return pack
