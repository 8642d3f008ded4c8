"""Data models for FlowDoc.

Node descriptors are serialized with camelCase aliases (``displayName``,
``propertySchema``...) to match the platform's own vocabulary; snake_case names
are accepted on input as well.
"""

import json
from datetime import UTC, datetime
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

EXPRESSION_PREFIX = "="


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Property specs
# =============================================================================


class _PropertyBase(_CamelModel):
    """Fields shared by every property variant."""

    name: str = Field(..., description="Parameter key inside a node's parameters")
    display_name: str = ""
    description: str = ""
    required: bool = False
    default: Any = None
    show_when: dict[str, list[Any]] = Field(
        default_factory=dict,
        description="Visible only when every listed sibling currently holds one of the values",
    )

    def is_visible(self, values: dict[str, Any]) -> bool:
        """Evaluate the visibility predicate against sibling values."""
        return all(values.get(key) in allowed for key, allowed in self.show_when.items())

    def accepts(self, value: Any) -> bool:
        if isinstance(value, str) and value.startswith(EXPRESSION_PREFIX):
            return True
        return self._accepts(value)

    def _accepts(self, value: Any) -> bool:
        return True

    def expected(self) -> str:
        return self.type  # type: ignore[attr-defined]


class StringProperty(_PropertyBase):
    type: Literal["string"] = "string"

    def _accepts(self, value: Any) -> bool:
        return isinstance(value, str)


class NumberProperty(_PropertyBase):
    type: Literal["number"] = "number"

    def _accepts(self, value: Any) -> bool:
        return isinstance(value, (int, float)) and not isinstance(value, bool)


class BooleanProperty(_PropertyBase):
    type: Literal["boolean"] = "boolean"

    def _accepts(self, value: Any) -> bool:
        return isinstance(value, bool)


class OptionValue(_CamelModel):
    name: str
    value: Any
    description: str = ""


class OptionsProperty(_PropertyBase):
    type: Literal["options"] = "options"
    options: list[OptionValue] = Field(default_factory=list)

    def _accepts(self, value: Any) -> bool:
        return any(option.value == value for option in self.options)

    def expected(self) -> str:
        return "one of " + ", ".join(json.dumps(o.value) for o in self.options)


class CollectionProperty(_PropertyBase):
    type: Literal["collection"] = "collection"
    properties: list["PropertySpec"] = Field(default_factory=list)

    def _accepts(self, value: Any) -> bool:
        return isinstance(value, (dict, list))


PropertySpec = Annotated[
    Union[StringProperty, NumberProperty, BooleanProperty, OptionsProperty, CollectionProperty],
    Field(discriminator="type"),
]

CollectionProperty.model_rebuild()


# =============================================================================
# Node descriptors
# =============================================================================


class Port(_CamelModel):
    """A named input or output port."""

    name: str = "main"
    type: str = "main"
    cardinality: Literal["one", "many"] = "many"


class CredentialRequirement(_CamelModel):
    name: str = Field(..., description="Credential type name, e.g. 'slackApi'")
    required: bool = True


class NodeDescriptor(_CamelModel):
    """Structured definition of one workflow-step type."""

    name: str = Field(..., min_length=1, description="Unique type name")
    display_name: str = ""
    description: str = ""
    category: str = "misc"
    subcategory: str | None = None
    properties: list[PropertySpec] = Field(default_factory=list, alias="propertySchema")
    inputs: list[Port] = Field(default_factory=lambda: [Port()])
    outputs: list[Port] = Field(default_factory=lambda: [Port()])
    credentials: list[CredentialRequirement] = Field(
        default_factory=list, alias="credentialRequirements"
    )
    versions: list[float] = Field(default_factory=lambda: [1])
    trigger: bool = Field(default=False, description="Can originate execution without input")
    loop_tolerant: bool = Field(default=False, description="May sit on a cycle")
    examples: list[dict[str, Any]] = Field(default_factory=list)
    last_updated: datetime | None = None

    @model_validator(mode="after")
    def _unique_property_names(self) -> "NodeDescriptor":
        seen: set[str] = set()
        for prop in self.properties:
            if prop.name in seen:
                raise ValueError(f"duplicate property '{prop.name}' in node '{self.name}'")
            seen.add(prop.name)
        return self

    @property
    def short_name(self) -> str:
        return self.name.rsplit(".", 1)[-1]

    def get_property(self, name: str):
        for prop in self.properties:
            if prop.name == name:
                return prop
        return None

    def to_context(self) -> str:
        """One-line summary for search listings."""
        label = self.display_name or self.name
        line = f"**{self.name}** ({label}) [{self.category}]"
        if self.trigger:
            line += " trigger"
        if self.description:
            line += f": {self.description}"
        return line

    def to_detail(self) -> str:
        """Full human-readable documentation of the descriptor."""
        lines = [f"**{self.display_name or self.name}** `{self.name}`"]
        if self.description:
            lines.append(self.description)
        category = self.category + (f" / {self.subcategory}" if self.subcategory else "")
        lines.append(f"Category: {category}")
        lines.append(f"Versions: {', '.join(_fmt_version(v) for v in self.versions)}")
        flags = [f for f, on in (("trigger", self.trigger), ("loop-tolerant", self.loop_tolerant)) if on]
        if flags:
            lines.append(f"Flags: {', '.join(flags)}")
        lines.append("Inputs: " + (", ".join(f"{p.name}<{p.type}>" for p in self.inputs) or "none"))
        lines.append("Outputs: " + (", ".join(f"{p.name}<{p.type}>" for p in self.outputs) or "none"))
        if self.credentials:
            creds = [f"{c.name}{' (required)' if c.required else ''}" for c in self.credentials]
            lines.append(f"Credentials: {', '.join(creds)}")
        if self.properties:
            lines.append("Properties:")
            for prop in self.properties:
                lines.extend(_describe_property(prop, indent="  "))
        if self.examples:
            lines.append(f"Examples: {len(self.examples)}")
            for example in self.examples[:2]:
                lines.append(f"  {json.dumps(example, sort_keys=True)}")
        return "\n".join(lines)


def _fmt_version(version: float) -> str:
    return str(int(version)) if float(version).is_integer() else str(version)


def _describe_property(prop, indent: str) -> list[str]:
    marker = "*" if prop.required else "-"
    line = f"{indent}{marker} {prop.name} ({prop.type})"
    if prop.default is not None:
        line += f" default={json.dumps(prop.default)}"
    if prop.show_when:
        line += f" when {json.dumps(prop.show_when, sort_keys=True)}"
    if prop.description:
        line += f": {prop.description}"
    lines = [line]
    if isinstance(prop, OptionsProperty) and prop.options:
        lines.append(f"{indent}    options: {', '.join(str(o.value) for o in prop.options)}")
    if isinstance(prop, CollectionProperty):
        for child in prop.properties:
            lines.extend(_describe_property(child, indent + "    "))
    return lines


class CacheRecord(BaseModel):
    """A descriptor as stored for one catalog revision."""

    descriptor: NodeDescriptor
    last_updated: datetime
    revision: str


class SyncMetadata(BaseModel):
    revision: str
    last_sync: datetime


class CatalogSnapshot(BaseModel):
    """Immutable view of the catalog at one revision."""

    model_config = ConfigDict(frozen=True)

    revision: str | None = None
    last_sync: datetime | None = None
    descriptors: tuple[NodeDescriptor, ...] = ()

    @property
    def marker(self) -> tuple[str | None, datetime | None]:
        return (self.revision, self.last_sync)


class CatalogStats(BaseModel):
    total_count: int
    per_category: dict[str, int] = Field(default_factory=dict)
    revision: str | None = None
    last_sync: datetime | None = None


class SyncResult(BaseModel):
    """Outcome of KnowledgeStore.sync(); failures are data, not exceptions."""

    ok: bool
    revision: str
    count: int = 0
    changed: bool = False
    error: str | None = None
    retryable: bool = False


# =============================================================================
# Workflow graphs and validation reports
# =============================================================================


class NodeInstance(_CamelModel):
    """One step of a submitted workflow."""

    name: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    parameters: dict[str, Any] = Field(default_factory=dict)
    credentials: dict[str, Any] = Field(default_factory=dict)
    disabled: bool = False

    @field_validator("parameters", "credentials", mode="before")
    @classmethod
    def _none_as_empty(cls, value):
        return {} if value is None else value


class Connection(_CamelModel):
    source: str
    target: str
    output_port: str = "main"
    input_port: str = "main"


class WorkflowGraph(_CamelModel):
    """Client-submitted workflow graph. Never persisted."""

    name: str = ""
    nodes: list[NodeInstance] = Field(default_factory=list)
    connections: list[Connection] = Field(default_factory=list)


Severity = Literal["error", "warning"]
FindingCategory = Literal["reference", "schema", "structural"]


class Finding(BaseModel):
    rule_id: str
    category: FindingCategory
    severity: Severity
    message: str
    instances: list[str] = Field(default_factory=list)

    def to_line(self) -> str:
        icon = "✗" if self.severity == "error" else "⚠"
        return f"{icon} [{self.rule_id}] {self.message}"


class ValidationReport(BaseModel):
    """Ordered findings for one workflow graph."""

    findings: list[Finding] = Field(default_factory=list)
    revision: str | None = None
    node_count: int = 0
    connection_count: int = 0

    @computed_field
    @property
    def valid(self) -> bool:
        return not any(f.severity == "error" for f in self.findings)

    @property
    def errors(self) -> list[Finding]:
        return [f for f in self.findings if f.severity == "error"]

    @property
    def warnings(self) -> list[Finding]:
        return [f for f in self.findings if f.severity == "warning"]

    def summary(self) -> dict[str, int]:
        return {
            "nodeCount": self.node_count,
            "connectionCount": self.connection_count,
            "errorCount": len(self.errors),
            "warningCount": len(self.warnings),
        }

    def to_text(self) -> str:
        status = "VALID" if self.valid else "INVALID"
        s = self.summary()
        lines = [
            f"Workflow is {status}: {s['errorCount']} error(s), {s['warningCount']} warning(s) "
            f"across {s['nodeCount']} node(s) and {s['connectionCount']} connection(s)."
        ]
        lines.extend(f.to_line() for f in self.findings)
        return "\n".join(lines)

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json"), sort_keys=True)


# =============================================================================
# Workflow templates
# =============================================================================


class TemplateParameter(_CamelModel):
    """A value the user is expected to fill in after importing a template."""

    name: str
    type: Literal["string", "number", "boolean", "options", "array"] = "string"
    description: str = ""
    required: bool = False
    default: Any = None
    options: list[str] = Field(default_factory=list)


class WorkflowTemplate(_CamelModel):
    """A ready-to-import workflow built from catalog nodes."""

    id: str = Field(..., min_length=1)
    name: str
    description: str = ""
    category: str = "general"
    tags: list[str] = Field(default_factory=list)
    difficulty: Literal["beginner", "intermediate", "advanced"] = "beginner"
    use_cases: list[str] = Field(default_factory=list)
    parameters: list[TemplateParameter] = Field(default_factory=list)
    workflow: dict[str, Any] = Field(..., description="Workflow in the platform's export format")

    @field_validator("workflow")
    @classmethod
    def _has_nodes(cls, value: dict[str, Any]) -> dict[str, Any]:
        if not isinstance(value.get("nodes"), list) or not value["nodes"]:
            raise ValueError("template workflow must contain a non-empty 'nodes' list")
        return value

    @property
    def node_types(self) -> list[str]:
        """Distinct node types used by the workflow, sorted."""
        return sorted({n["type"] for n in self.workflow["nodes"] if isinstance(n, dict) and n.get("type")})

    def to_context(self) -> str:
        line = f"**{self.id}**: {self.name} [{self.category}, {self.difficulty}]"
        if self.description:
            line += f" - {self.description}"
        return line


def utcnow() -> datetime:
    return datetime.now(UTC)
