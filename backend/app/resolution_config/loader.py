"""Versioned rule tables for the resolution engine.

Carrier allow-lists, direction heuristics, classification rules, the
workflow-state mapping and action rules are JSON documents validated into
pydantic models. Pure data: no DB or Claude dependency.
"""

import json
import logging
import re
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field, PrivateAttr, ValidationError, field_validator, model_validator

from app.errors import ConfigError
from app.schemas.resolution import (
    DATE_KINDS,
    Direction,
    DocumentType,
    IdentifierKind,
    SenderCategory,
)

logger = logging.getLogger("resolution.config")

TABLE_FILES = {
    "carriers": "carriers.json",
    "direction": "direction.json",
    "classification": "classification_rules.json",
    "workflow": "workflow_states.json",
    "actions": "action_rules.json",
    "extraction": "extraction_priorities.json",
}


def _compile_all(patterns: list[str], flags: int = re.IGNORECASE) -> list[re.Pattern]:
    return [re.compile(p, flags) for p in patterns]


def _check_patterns(patterns: list[str]) -> list[str]:
    for pattern in patterns:
        try:
            re.compile(pattern)
        except re.error as e:
            raise ValueError(f"invalid pattern {pattern!r}: {e}") from e
    return patterns


def _domain_matches(domain: str, allowed: str) -> bool:
    return domain == allowed or domain.endswith("." + allowed)


# --- Carriers ---


class CarrierProfile(BaseModel):
    id: str
    name: str
    domains: list[str] = Field(..., min_length=1)
    name_fragments: list[str] = Field(default_factory=list)
    booking_prefixes: list[str] = Field(default_factory=list)

    _fragment_patterns: list[re.Pattern] = PrivateAttr(default_factory=list)

    @field_validator("domains", "name_fragments")
    @classmethod
    def _lowercase(cls, values: list[str]) -> list[str]:
        return [v.strip().lower() for v in values if v.strip()]

    @field_validator("booking_prefixes")
    @classmethod
    def _uppercase(cls, values: list[str]) -> list[str]:
        # Longest first so "HLCU" is tried before "HL"
        return sorted((v.strip().upper() for v in values if v.strip()), key=len, reverse=True)

    def model_post_init(self, __context) -> None:
        self._fragment_patterns = [
            re.compile(rf"(?<![a-z0-9]){re.escape(f)}(?![a-z0-9])") for f in self.name_fragments
        ]

    @property
    def primary_domain(self) -> str:
        return self.domains[0]

    def owns_domain(self, domain: str) -> bool:
        return any(_domain_matches(domain, d) for d in self.domains)

    def matches_name(self, text: str) -> bool:
        lowered = text.lower()
        return any(p.search(lowered) for p in self._fragment_patterns)


class CarrierTable(BaseModel):
    version: str
    booking_suffix_pattern: str = ""
    carriers: list[CarrierProfile]

    _suffix_re: re.Pattern | None = PrivateAttr(default=None)

    @field_validator("booking_suffix_pattern")
    @classmethod
    def _valid_suffix(cls, value: str) -> str:
        if value:
            _check_patterns([value])
        return value

    @model_validator(mode="after")
    def _unique_domains(self):
        seen: dict[str, str] = {}
        for carrier in self.carriers:
            for domain in carrier.domains:
                if domain in seen and seen[domain] != carrier.id:
                    raise ValueError(f"domain {domain} claimed by {seen[domain]} and {carrier.id}")
                seen[domain] = carrier.id
        return self

    def model_post_init(self, __context) -> None:
        self._suffix_re = re.compile(self.booking_suffix_pattern) if self.booking_suffix_pattern else None

    @property
    def suffix_re(self) -> re.Pattern | None:
        return self._suffix_re

    def for_domain(self, domain: str) -> CarrierProfile | None:
        domain = domain.strip().lower()
        if not domain:
            return None
        for carrier in self.carriers:
            if carrier.owns_domain(domain):
                return carrier
        return None

    def for_name(self, text: str) -> CarrierProfile | None:
        for carrier in self.carriers:
            if carrier.matches_name(text):
                return carrier
        return None

    @property
    def all_booking_prefixes(self) -> list[str]:
        prefixes = {p for c in self.carriers for p in c.booking_prefixes}
        return sorted(prefixes, key=len, reverse=True)


# --- Direction heuristics ---


class DirectionTable(BaseModel):
    version: str
    own_org_domains: list[str] = Field(default_factory=list)
    reply_prefix_pattern: str
    forward_markers: list[str] = Field(default_factory=list)
    carrier_subject_patterns: list[str] = Field(default_factory=list)

    _forward_res: list[re.Pattern] = PrivateAttr(default_factory=list)
    _subject_res: list[re.Pattern] = PrivateAttr(default_factory=list)
    _reply_re: re.Pattern | None = PrivateAttr(default=None)

    @field_validator("own_org_domains")
    @classmethod
    def _lowercase(cls, values: list[str]) -> list[str]:
        return [v.strip().lower() for v in values if v.strip()]

    @field_validator("carrier_subject_patterns", "forward_markers")
    @classmethod
    def _valid_patterns(cls, values: list[str]) -> list[str]:
        return _check_patterns(values)

    @field_validator("forward_markers")
    @classmethod
    def _marker_has_party_group(cls, values: list[str]) -> list[str]:
        for pattern in values:
            if "party" not in re.compile(pattern).groupindex:
                raise ValueError(f"forward marker {pattern!r} has no named 'party' group")
        return values

    def model_post_init(self, __context) -> None:
        self._forward_res = _compile_all(self.forward_markers)
        self._subject_res = _compile_all(self.carrier_subject_patterns)
        self._reply_re = re.compile(self.reply_prefix_pattern, re.IGNORECASE)

    @property
    def forward_res(self) -> list[re.Pattern]:
        return self._forward_res

    @property
    def subject_res(self) -> list[re.Pattern]:
        return self._subject_res

    @property
    def reply_re(self) -> re.Pattern:
        return self._reply_re

    def is_own_org_domain(self, domain: str) -> bool:
        domain = domain.strip().lower()
        return bool(domain) and any(_domain_matches(domain, d) for d in self.own_org_domains)


# --- Classification rules ---


class ClassificationRule(BaseModel):
    id: str
    document_type: DocumentType
    confidence: int = Field(..., ge=0, le=100)
    subject_patterns: list[str] = Field(default_factory=list)
    body_patterns: list[str] = Field(default_factory=list)
    attachment_patterns: list[str] = Field(default_factory=list)
    direction: Direction | None = None
    sender_categories: list[SenderCategory] | None = None

    _compiled: dict[str, list[re.Pattern]] = PrivateAttr(default_factory=dict)

    @field_validator("subject_patterns", "body_patterns", "attachment_patterns")
    @classmethod
    def _valid_patterns(cls, values: list[str]) -> list[str]:
        return _check_patterns(values)

    @model_validator(mode="after")
    def _has_patterns(self):
        if not (self.subject_patterns or self.body_patterns or self.attachment_patterns):
            raise ValueError(f"rule {self.id} has no patterns")
        if self.document_type == DocumentType.UNKNOWN:
            raise ValueError(f"rule {self.id} cannot classify as unknown")
        return self

    def model_post_init(self, __context) -> None:
        self._compiled = {
            "subject": _compile_all(self.subject_patterns),
            "body": _compile_all(self.body_patterns),
            "attachment": _compile_all(self.attachment_patterns, re.IGNORECASE | re.MULTILINE),
        }

    def patterns_for(self, field: str) -> list[re.Pattern]:
        return self._compiled.get(field, [])

    def applies_to(self, direction: Direction, sender_category: SenderCategory) -> bool:
        if self.direction is not None and self.direction != direction:
            return False
        if self.sender_categories is not None and sender_category not in self.sender_categories:
            return False
        return True


class ClassificationTable(BaseModel):
    version: str
    reply_confidence_penalty: int = Field(25, ge=0, le=100)
    rules: list[ClassificationRule]
    document_type_aliases: dict[str, DocumentType] = Field(default_factory=dict)

    @field_validator("document_type_aliases", mode="before")
    @classmethod
    def _normalise_alias_keys(cls, value: dict) -> dict:
        return {str(k).strip().lower(): v for k, v in (value or {}).items()}

    @model_validator(mode="after")
    def _unique_ids(self):
        ids = [r.id for r in self.rules]
        dupes = {i for i in ids if ids.count(i) > 1}
        if dupes:
            raise ValueError(f"duplicate rule ids: {sorted(dupes)}")
        return self

    def normalize_document_type(self, raw: str | None) -> DocumentType | None:
        """Map a free-form type label onto the catalogue, or None if unrecognised."""
        if not raw:
            return None
        key = re.sub(r"[\s\-/]+", "_", raw.strip().lower())
        try:
            return DocumentType(key)
        except ValueError:
            return self.document_type_aliases.get(key)


# --- Workflow states ---


class WorkflowStateDef(BaseModel):
    state: str
    order: int = Field(..., ge=0)
    phase: str
    direction: Direction
    document_types: list[DocumentType] = Field(..., min_length=1)


class WorkflowTable(BaseModel):
    version: str
    phases: list[str] = Field(..., min_length=1)
    states: list[WorkflowStateDef]

    _by_key: dict[tuple[DocumentType, Direction], WorkflowStateDef] = PrivateAttr(default_factory=dict)
    _by_name: dict[str, WorkflowStateDef] = PrivateAttr(default_factory=dict)

    @model_validator(mode="after")
    def _consistent(self):
        names: set[str] = set()
        keys: dict[tuple[DocumentType, Direction], str] = {}
        for s in self.states:
            if s.state in names:
                raise ValueError(f"duplicate workflow state {s.state}")
            names.add(s.state)
            if s.phase not in self.phases:
                raise ValueError(f"state {s.state} has unknown phase {s.phase}")
            for doc_type in s.document_types:
                key = (doc_type, s.direction)
                if key in keys:
                    raise ValueError(
                        f"({doc_type.value}, {s.direction.value}) mapped to both {keys[key]} and {s.state}"
                    )
                keys[key] = s.state

        # Phases must not interleave in order
        ceiling = -1
        for phase in self.phases:
            orders = [s.order for s in self.states if s.phase == phase]
            if not orders:
                continue
            if min(orders) <= ceiling:
                raise ValueError(f"phase {phase} overlaps the order range of an earlier phase")
            ceiling = max(orders)
        return self

    def model_post_init(self, __context) -> None:
        for s in self.states:
            self._by_name[s.state] = s
            for doc_type in s.document_types:
                self._by_key[(doc_type, s.direction)] = s

    def state_for(self, document_type: DocumentType, direction: Direction) -> WorkflowStateDef | None:
        return self._by_key.get((document_type, direction))

    def by_name(self, state: str) -> WorkflowStateDef | None:
        return self._by_name.get(state)


# --- Action rules ---


class ActionCreationRule(BaseModel):
    document_type: DocumentType
    direction: Direction
    description: str = Field(..., min_length=1)
    owner: str
    priority: str = "medium"
    deadline_field: IdentifierKind | None = None

    @field_validator("deadline_field")
    @classmethod
    def _date_kind(cls, value: IdentifierKind | None) -> IdentifierKind | None:
        if value is not None and value not in DATE_KINDS:
            raise ValueError(f"deadline_field {value.value} is not a date kind")
        return value


class ActionResolutionRule(BaseModel):
    document_type: DocumentType
    direction: Direction | None = None
    keywords: list[str] = Field(..., min_length=1)


class ActionTable(BaseModel):
    version: str
    creation: list[ActionCreationRule] = Field(default_factory=list)
    resolution: list[ActionResolutionRule] = Field(default_factory=list)

    def creation_rules_for(self, document_type: DocumentType, direction: Direction) -> list[ActionCreationRule]:
        return [r for r in self.creation if r.document_type == document_type and r.direction == direction]

    def keywords_for(self, document_type: DocumentType, direction: Direction) -> list[str]:
        keywords: list[str] = []
        for rule in self.resolution:
            if rule.document_type != document_type:
                continue
            if rule.direction is not None and rule.direction != direction:
                continue
            keywords.extend(k for k in rule.keywords if k not in keywords)
        return keywords


# --- Extraction priorities ---


class ExtractionPriorityTable(BaseModel):
    version: str
    default: list[IdentifierKind] = Field(default_factory=list)
    priorities: dict[DocumentType, list[IdentifierKind]] = Field(default_factory=dict)

    def kinds_for(self, document_type: DocumentType | None) -> list[IdentifierKind]:
        if document_type is None:
            return list(self.default)
        return list(self.priorities.get(document_type, self.default))


class ResolutionConfig(BaseModel):
    """All rule tables, loaded together."""

    carriers: CarrierTable
    direction: DirectionTable
    classification: ClassificationTable
    workflow: WorkflowTable
    actions: ActionTable
    extraction: ExtractionPriorityTable

    @property
    def version(self) -> str:
        versions = {
            name: getattr(self, name).version
            for name in ("carriers", "direction", "classification", "workflow", "actions", "extraction")
        }
        distinct = set(versions.values())
        if len(distinct) == 1:
            return distinct.pop()
        return ";".join(f"{name}={v}" for name, v in versions.items())


def load_resolution_config(config_dir: str | Path) -> ResolutionConfig:
    """Load and validate every rule table from a directory.

    Raises ConfigError naming the offending file.
    """
    config_dir = Path(config_dir)
    tables: dict[str, dict] = {}
    for name, filename in TABLE_FILES.items():
        path = config_dir / filename
        try:
            with path.open(encoding="utf-8") as f:
                tables[name] = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Could not read rule table {path}: {e}") from e

    try:
        config = ResolutionConfig.model_validate(tables)
    except ValidationError as e:
        raise ConfigError(f"Invalid rule tables in {config_dir}: {e}") from e

    logger.info(
        "Loaded resolution config %s from %s (%d classification rules, %d workflow states)",
        config.version, config_dir, len(config.classification.rules), len(config.workflow.states),
    )
    return config


@lru_cache(maxsize=4)
def get_resolution_config(config_dir: str) -> ResolutionConfig:
    return load_resolution_config(config_dir)
