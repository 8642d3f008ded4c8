"""Tool registry and the tools FlowDoc exposes over the protocol.

Each tool is an async handler taking a ToolContext and a validated pydantic
arguments model. The model's JSON schema is what clients see as the tool's
input schema, and the handler's docstring is its description.
"""

import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .catalog_index import CatalogIndex
from .catalog_loader import load_catalog
from .errors import PlatformNotConfiguredError, WorkflowFormatError
from .models import CollectionProperty, NodeDescriptor, OptionsProperty, ValidationReport
from .persistence import KnowledgeStore
from .platform_client import PlatformClient
from .templates import TemplateLibrary
from .validator import validate_node as run_validate_node
from .validator import validate_workflow as run_validate_workflow
from .workflow_graph import parse_workflow

logger = logging.getLogger("flowdoc.tools")


@dataclass
class ToolResult:
    text: str
    is_error: bool = False


@dataclass
class ToolContext:
    """What tool handlers may touch."""

    store: KnowledgeStore
    index: CatalogIndex
    platform: PlatformClient | None = None
    catalog_paths: list[Path] = field(default_factory=list)
    templates: TemplateLibrary = field(default_factory=TemplateLibrary)

    def require_platform(self) -> PlatformClient:
        if self.platform is None:
            raise PlatformNotConfiguredError(
                "Platform API is not configured. Set N8N_API_URL (and N8N_API_KEY) to use this tool."
            )
        return self.platform


Handler = Callable[[ToolContext, Any], Awaitable[ToolResult | str]]


class ToolArguments(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class NoArguments(ToolArguments):
    pass


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    arguments: type[ToolArguments]
    handler: Handler

    def input_schema(self) -> dict:
        schema = self.arguments.model_json_schema(by_alias=True)
        schema.pop("title", None)
        schema.setdefault("properties", {})
        return schema

    def parse(self, raw: dict | None) -> ToolArguments:
        return self.arguments.model_validate(raw or {})


class ToolRegistry:
    """Maps stable tool names to argument schemas and handlers."""

    def __init__(self):
        self._tools: dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self:
            raise ValueError(f"Tool '{spec.name}' is already registered")
        self._tools[spec.name] = spec

    def tool(self, arguments: type[ToolArguments] = NoArguments, name: str | None = None):
        """Decorator registering an async handler as a tool."""

        def decorator(handler: Handler) -> Handler:
            self.register(ToolSpec(
                name=name or handler.__name__,
                description=inspect.cleandoc(handler.__doc__ or ""),
                arguments=arguments,
                handler=handler,
            ))
            return handler

        return decorator

    def get(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    def list(self) -> list[ToolSpec]:
        return list(self._tools.values())

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    async def call(self, name: str, raw_arguments: dict | None, ctx: ToolContext) -> ToolResult:
        """Validate arguments and run a tool.

        Unknown tools and argument shape errors come back as error results.
        Handler exceptions propagate to the caller.
        """
        spec = self._tools.get(name)
        if spec is None:
            available = ", ".join(sorted(self._tools))
            return ToolResult(f"Unknown tool '{name}'. Available tools: {available}", is_error=True)

        try:
            args = spec.parse(raw_arguments)
        except ValidationError as e:
            problems = "\n".join(
                f"  - {'.'.join(str(p) for p in err['loc']) or 'arguments'}: {err['msg']}" for err in e.errors()
            )
            return ToolResult(f"Invalid arguments for '{name}':\n{problems}", is_error=True)

        result = await spec.handler(ctx, args)
        if isinstance(result, str):
            return ToolResult(result)
        return result


registry = ToolRegistry()


def _json_block(data: Any) -> str:
    return "```json\n" + json.dumps(data, indent=2, sort_keys=True, default=str) + "\n```"


def _essentials(descriptor: NodeDescriptor) -> str:
    lines = [descriptor.to_context()]
    lines.append("Inputs: " + (", ".join(p.name for p in descriptor.inputs) or "none (trigger)"))
    lines.append("Outputs: " + (", ".join(p.name for p in descriptor.outputs) or "none"))
    required_creds = [c.name for c in descriptor.credentials if c.required]
    if required_creds:
        lines.append(f"Required credentials: {', '.join(required_creds)}")
    defaults = {p.name: p.default for p in descriptor.properties if p.default is not None}
    visible = [p for p in descriptor.properties if p.is_visible(defaults)]
    if visible:
        lines.append("Properties (visible with defaults, * = required):")
        for prop in visible:
            marker = "*" if prop.required and prop.default is None else "-"
            default = f" = {json.dumps(prop.default)}" if prop.default is not None else ""
            lines.append(f"  {marker} {prop.name} ({prop.type}){default}")
    return "\n".join(lines)


def _report_result(report: ValidationReport) -> ToolResult:
    text = report.to_text() + "\n\n" + _json_block(report.model_dump(mode="json"))
    return ToolResult(text, is_error=not report.valid)


# ============================================================================
# CATALOG TOOLS
# ============================================================================


class GetNodeInfoArgs(ToolArguments):
    node_type: str = Field(..., min_length=1, description='Node type, e.g. "n8n-nodes-base.slack" or "slack"')
    detail: Literal["essentials", "complete"] = Field(
        "essentials", description="essentials=ports, credentials and default-visible properties; complete=full schema"
    )


@registry.tool(GetNodeInfoArgs)
async def get_node_info(ctx: ToolContext, args: GetNodeInfoArgs) -> ToolResult:
    """Get documentation for one node type: ports, credentials and properties."""
    snapshot = await ctx.index.current()
    descriptor = snapshot.resolve(args.node_type)
    if descriptor is None:
        suggestions = snapshot.suggest(args.node_type)
        hint = f" Did you mean: {', '.join(suggestions)}?" if suggestions else ""
        return ToolResult(f"Node type not found: {args.node_type}.{hint}", is_error=True)

    if args.detail == "essentials":
        return ToolResult(_essentials(descriptor))

    text = descriptor.to_detail()
    record = await ctx.store.get_record(descriptor.name)
    if record:
        text += f"\nLast updated: {record.last_updated.isoformat()} (revision {record.revision})"
    return ToolResult(text)


class GetNodeConfigArgs(ToolArguments):
    node_type: str = Field(..., min_length=1, description='Node type, e.g. "n8n-nodes-base.httpRequest" or "httpRequest"')
    mode: Literal["search_properties", "dependencies"] = Field(
        "search_properties",
        description="search_properties=find properties by keyword; dependencies=which properties show or hide others",
    )
    query: str = Field("", description='Property search term for search_properties, e.g. "auth", "body", "channel"')
    config: dict[str, Any] = Field(
        default_factory=dict, description="Current parameters; dependencies mode reports what they show and hide"
    )


def _walk_properties(properties, prefix: str = ""):
    for prop in properties:
        path = prefix + prop.name
        yield path, prop
        if isinstance(prop, CollectionProperty):
            yield from _walk_properties(prop.properties, path + ".")


def _property_matches(prop, needle: str) -> bool:
    haystack = [prop.name, prop.display_name, prop.description]
    if isinstance(prop, OptionsProperty):
        haystack.extend(str(o.value) for o in prop.options)
        haystack.extend(o.name for o in prop.options)
    return any(needle in text.casefold() for text in haystack)


def _condition_text(show_when: dict[str, list[Any]]) -> str:
    return " and ".join(f"{key} in {json.dumps(values)}" for key, values in show_when.items())


def _search_properties(descriptor: NodeDescriptor, query: str) -> str:
    needle = query.strip().casefold()
    matches = [
        (path, prop) for path, prop in _walk_properties(descriptor.properties)
        if not needle or _property_matches(prop, needle)
    ]
    if not matches:
        names = ", ".join(p.name for p in descriptor.properties) or "none"
        return f"No properties of {descriptor.name} match '{query}'. Top-level properties: {names}"

    suffix = f" matching '{query}'" if needle else ""
    lines = [f"Found {len(matches)} properties of {descriptor.name}{suffix}:"]
    for path, prop in matches:
        line = f"  • {path} ({prop.type})"
        if prop.required:
            line += " required"
        if prop.default is not None:
            line += f" default={json.dumps(prop.default)}"
        if prop.display_name:
            line += f" - {prop.display_name}"
        if prop.description:
            line += f": {prop.description}"
        lines.append(line)
        if isinstance(prop, OptionsProperty) and prop.options:
            lines.append("      options: " + ", ".join(json.dumps(o.value) for o in prop.options))
        if prop.show_when:
            lines.append(f"      shown when {_condition_text(prop.show_when)}")
    return "\n".join(lines)


def _property_dependencies(descriptor: NodeDescriptor, config: dict[str, Any]) -> str:
    controlled: dict[str, list] = {}
    for prop in descriptor.properties:
        for key in prop.show_when:
            controlled.setdefault(key, []).append(prop)

    if not controlled:
        lines = [f"No property of {descriptor.name} depends on another; every property is always shown."]
    else:
        lines = [f"Property dependencies for {descriptor.name}:"]
        for key, dependents in controlled.items():
            controller = descriptor.get_property(key)
            kind = controller.type if controller is not None else "not a property of this node"
            lines.append(f"{key} ({kind}) controls:")
            lines.extend(f"  • {prop.name} when {_condition_text(prop.show_when)}" for prop in dependents)

    values = {p.name: p.default for p in descriptor.properties if p.default is not None}
    values.update(config)
    visible = [p.name for p in descriptor.properties if p.is_visible(values)]
    hidden = [p.name for p in descriptor.properties if not p.is_visible(values)]
    lines.append(f"With {'the given configuration' if config else 'default values'}:")
    lines.append("  Visible: " + (", ".join(visible) or "none"))
    lines.append("  Hidden: " + (", ".join(hidden) or "none"))
    unknown = [key for key in config if descriptor.get_property(key) is None]
    if unknown:
        lines.append("  Not properties of this node: " + ", ".join(unknown))
    return "\n".join(lines)


@registry.tool(GetNodeConfigArgs)
async def get_node_config(ctx: ToolContext, args: GetNodeConfigArgs) -> ToolResult:
    """Get configuration help for a node type.

    search_properties finds properties by keyword, including nested collection
    fields and option values. dependencies lists which properties control the
    visibility of others and what a given configuration shows and hides.
    """
    snapshot = await ctx.index.current()
    descriptor = snapshot.resolve(args.node_type)
    if descriptor is None:
        suggestions = snapshot.suggest(args.node_type)
        hint = f" Did you mean: {', '.join(suggestions)}?" if suggestions else ""
        return ToolResult(f"Node type not found: {args.node_type}.{hint}", is_error=True)

    if args.mode == "search_properties":
        return ToolResult(_search_properties(descriptor, args.query))
    return ToolResult(_property_dependencies(descriptor, args.config))


class FindNodesArgs(ToolArguments):
    query: str = Field("", description='Search term, e.g. "slack", "email", "http"')
    category: str | None = Field(None, description="Restrict to one category (see list_categories)")
    trigger_only: bool = Field(False, description="Only return trigger-capable nodes")
    limit: int = Field(20, ge=1, le=200, description="Maximum results")


@registry.tool(FindNodesArgs)
async def find_nodes(ctx: ToolContext, args: FindNodesArgs) -> str:
    """Find node types by search term and/or category.

    Results are ranked: exact name, display-name match, description match, then word matches.
    """
    results = await ctx.index.search(
        args.query, category=args.category, trigger_only=args.trigger_only, limit=args.limit
    )
    if not results:
        return f"No nodes found for '{args.query}'."
    lines = [f"Found {len(results)} nodes:"]
    lines.extend(f"  • {d.to_context()}" for d in results)
    return "\n".join(lines)


@registry.tool()
async def list_categories(ctx: ToolContext, args: NoArguments) -> str:
    """List node categories with their node counts."""
    snapshot = await ctx.index.current()
    categories = snapshot.list_categories()
    if not categories:
        return "Catalog is empty. Run sync_catalog to load it."
    lines = ["Node categories:"]
    for category in categories:
        lines.append(f"  • {category} ({len(snapshot.by_category(category))} nodes)")
    return "\n".join(lines)


class CategoryArgs(ToolArguments):
    category: str = Field(..., min_length=1, description="Category name")


@registry.tool(CategoryArgs)
async def get_nodes_by_category(ctx: ToolContext, args: CategoryArgs) -> str:
    """List every node type in one category."""
    nodes = await ctx.index.by_category(args.category)
    if not nodes:
        return f"No nodes in category: {args.category}"
    lines = [f"Nodes in '{args.category}':"]
    lines.extend(f"  • {d.name}: {d.display_name or d.name}" for d in nodes)
    return "\n".join(lines)


@registry.tool()
async def get_database_statistics(ctx: ToolContext, args: NoArguments) -> str:
    """Get catalog statistics: node counts per category, revision and last sync time."""
    stats = await ctx.store.stats()
    lines = [
        f"Total nodes: {stats.total_count}",
        f"Revision: {stats.revision or 'never synced'}",
        f"Last sync: {stats.last_sync.isoformat() if stats.last_sync else 'never'}",
        f"Index rebuilds this session: {ctx.index.rebuild_count}",
    ]
    if stats.per_category:
        lines.append("By category:")
        lines.extend(f"  • {category}: {count}" for category, count in stats.per_category.items())
    return "\n".join(lines)


class SyncCatalogArgs(ToolArguments):
    path: str | None = Field(None, description="Catalog YAML/JSON file or directory; defaults to the bundled catalog")


@registry.tool(SyncCatalogArgs)
async def sync_catalog(ctx: ToolContext, args: SyncCatalogArgs) -> ToolResult:
    """Reload the node catalog from its data files, replacing the cache atomically."""
    paths = [Path(args.path).expanduser()] if args.path else ctx.catalog_paths
    descriptors, revision = load_catalog(paths or None)
    result = await ctx.store.sync(descriptors, revision)
    if not result.ok:
        return ToolResult(
            f"Sync to revision {revision} failed; previous catalog kept. Retry is safe.\nError: {result.error}",
            is_error=True,
        )
    if not result.changed:
        return ToolResult(f"Catalog already at revision {revision} ({result.count} nodes).")
    return ToolResult(f"Synced {result.count} nodes at revision {revision}.")


# ============================================================================
# VALIDATION TOOLS
# ============================================================================


class ValidateWorkflowArgs(ToolArguments):
    workflow: dict[str, Any] = Field(..., description="Workflow JSON with 'nodes' and 'connections'")


@registry.tool(ValidateWorkflowArgs)
async def validate_workflow(ctx: ToolContext, args: ValidateWorkflowArgs) -> ToolResult:
    """Validate a workflow graph against the node catalog.

    Checks node references, port compatibility, trigger presence, cycles,
    credential bindings and required properties. Warnings never fail validation.
    """
    try:
        graph = parse_workflow(args.workflow)
    except WorkflowFormatError as e:
        return ToolResult(f"Malformed workflow: {e}", is_error=True)
    snapshot = await ctx.index.current()
    return _report_result(run_validate_workflow(graph, snapshot))


class ValidateNodeArgs(ToolArguments):
    node_type: str = Field(..., min_length=1, description="Node type to validate against")
    parameters: dict[str, Any] = Field(default_factory=dict, description="Node parameters")
    credentials: dict[str, Any] = Field(default_factory=dict, description="Credential bindings by credential type")


@registry.tool(ValidateNodeArgs)
async def validate_node(ctx: ToolContext, args: ValidateNodeArgs) -> ToolResult:
    """Validate a single node configuration: required properties, value types and credentials."""
    descriptor = await ctx.index.resolve(args.node_type)
    if descriptor is None:
        return ToolResult(f"Node type not found: {args.node_type}", is_error=True)
    findings = run_validate_node(descriptor, args.parameters, args.credentials, instance_name=descriptor.short_name)
    errors = [f for f in findings if f.severity == "error"]
    if not findings:
        return ToolResult(f"Configuration for {descriptor.name} is valid.")
    lines = [f"Configuration for {descriptor.name}: {len(errors)} error(s), {len(findings) - len(errors)} warning(s)"]
    lines.extend(f.to_line() for f in findings)
    return ToolResult("\n".join(lines), is_error=bool(errors))


class WorkflowIdArgs(ToolArguments):
    workflow_id: str = Field(..., min_length=1, description="Workflow ID on the platform")


@registry.tool(WorkflowIdArgs)
async def validate_remote_workflow(ctx: ToolContext, args: WorkflowIdArgs) -> ToolResult:
    """Fetch a workflow from the platform and validate it against the catalog."""
    platform = ctx.require_platform()
    data = await platform.get_workflow(args.workflow_id)
    try:
        graph = parse_workflow(data)
    except WorkflowFormatError as e:
        return ToolResult(f"Workflow {args.workflow_id} is malformed: {e}", is_error=True)
    snapshot = await ctx.index.current()
    return _report_result(run_validate_workflow(graph, snapshot))


# ============================================================================
# TEMPLATE TOOLS
# ============================================================================


class FindTemplatesArgs(ToolArguments):
    query: str = Field("", description='Keywords, e.g. "slack alerts", "database", "chatbot"')
    node_types: list[str] = Field(
        default_factory=list, description='Templates must use every one of these node types; "slack" works too'
    )
    category: str | None = Field(None, description="Template category, e.g. communication, data-sync, ai")
    limit: int = Field(20, ge=1, le=100, description="Maximum results")


@registry.tool(FindTemplatesArgs)
async def find_templates(ctx: ToolContext, args: FindTemplatesArgs) -> str:
    """Search workflow templates by keywords, node types and category.

    With no arguments, lists every template and the available categories.
    """
    node_types = []
    if args.node_types:
        snapshot = await ctx.index.current()
        for ref in args.node_types:
            descriptor = snapshot.resolve(ref)
            node_types.append(descriptor.name if descriptor else ref)

    results = ctx.templates.search(args.query, node_types=node_types, category=args.category, limit=args.limit)
    categories = ", ".join(f"{name} ({count})" for name, count in ctx.templates.categories().items())
    if not results:
        return f"No templates found. Template categories: {categories}"

    lines = [f"Found {len(results)} templates:"]
    for template in results:
        lines.append(f"  • {template.to_context()}")
        lines.append(f"    nodes: {', '.join(template.node_types)}")
    if not (args.query or args.node_types or args.category):
        lines.append(f"Template categories: {categories}")
    lines.append("Use get_template with a template id to get the importable workflow.")
    return "\n".join(lines)


class GetTemplateArgs(ToolArguments):
    template_id: str = Field(..., min_length=1, description='Template id from find_templates, e.g. "webhook-to-slack-alerts"')


@registry.tool(GetTemplateArgs)
async def get_template(ctx: ToolContext, args: GetTemplateArgs) -> ToolResult:
    """Get a workflow template: what it does, the parameters to fill in and its importable workflow JSON.

    The workflow is checked against the current catalog, so node types the
    catalog does not know are reported before import.
    """
    template = ctx.templates.get(args.template_id)
    if template is None:
        available = ", ".join(t.id for t in ctx.templates.all())
        return ToolResult(f"Template not found: {args.template_id}. Available templates: {available}", is_error=True)

    lines = [template.to_context()]
    if template.tags:
        lines.append(f"Tags: {', '.join(template.tags)}")
    if template.use_cases:
        lines.append(f"Use cases: {'; '.join(template.use_cases)}")
    if template.parameters:
        lines.append("Parameters to fill in (* = required):")
        for param in template.parameters:
            line = f"  {'*' if param.required else '-'} {param.name} ({param.type})"
            if param.default is not None:
                line += f" = {json.dumps(param.default)}"
            if param.options:
                line += f" [{', '.join(param.options)}]"
            if param.description:
                line += f": {param.description}"
            lines.append(line)

    snapshot = await ctx.index.current()
    report = run_validate_workflow(parse_workflow(template.workflow), snapshot)
    lines.append(
        f"Catalog check at revision {snapshot.revision or 'none'}: "
        f"{len(report.errors)} error(s), {len(report.warnings)} warning(s)"
    )
    lines.extend(f"  {finding.to_line()}" for finding in report.errors)
    lines.append("")
    lines.append(_json_block(template.workflow))
    return ToolResult("\n".join(lines))


# ============================================================================
# PLATFORM TOOLS
# ============================================================================


@registry.tool()
async def list_workflows(ctx: ToolContext, args: NoArguments) -> str:
    """List workflows on the automation platform."""
    workflows = await ctx.require_platform().list_workflows()
    if not workflows:
        return "No workflows found."
    lines = [f"Found {len(workflows)} workflows:"]
    for wf in workflows:
        state = "active" if wf.get("active") else "inactive"
        lines.append(f"  • {wf.get('id')}: {wf.get('name', 'unnamed')} ({state})")
    return "\n".join(lines)


@registry.tool(WorkflowIdArgs)
async def get_workflow(ctx: ToolContext, args: WorkflowIdArgs) -> str:
    """Get a workflow definition from the platform."""
    return _json_block(await ctx.require_platform().get_workflow(args.workflow_id))


class CreateWorkflowArgs(ToolArguments):
    workflow: dict[str, Any] = Field(..., description="Workflow JSON: name, nodes, connections, settings")


@registry.tool(CreateWorkflowArgs)
async def create_workflow(ctx: ToolContext, args: CreateWorkflowArgs) -> str:
    """Create a workflow on the platform."""
    created = await ctx.require_platform().create_workflow(args.workflow)
    return f"Created workflow {created.get('id')}: {created.get('name', '')}"


class UpdateWorkflowArgs(ToolArguments):
    workflow_id: str = Field(..., min_length=1)
    workflow: dict[str, Any] = Field(..., description="Full workflow JSON to store")


@registry.tool(UpdateWorkflowArgs)
async def update_workflow(ctx: ToolContext, args: UpdateWorkflowArgs) -> str:
    """Replace a workflow definition on the platform."""
    updated = await ctx.require_platform().update_workflow(args.workflow_id, args.workflow)
    return f"Updated workflow {updated.get('id', args.workflow_id)}: {updated.get('name', '')}"


@registry.tool(WorkflowIdArgs)
async def activate_workflow(ctx: ToolContext, args: WorkflowIdArgs) -> str:
    """Activate a workflow so its triggers start firing."""
    await ctx.require_platform().activate_workflow(args.workflow_id)
    return f"Workflow {args.workflow_id} activated."


@registry.tool(WorkflowIdArgs)
async def deactivate_workflow(ctx: ToolContext, args: WorkflowIdArgs) -> str:
    """Deactivate a workflow."""
    await ctx.require_platform().deactivate_workflow(args.workflow_id)
    return f"Workflow {args.workflow_id} deactivated."


@registry.tool()
async def list_variables(ctx: ToolContext, args: NoArguments) -> str:
    """List platform variables."""
    variables = await ctx.require_platform().list_variables()
    if not variables:
        return "No variables defined."
    return "\n".join(f"  • {v.get('key')} = {v.get('value')}" for v in variables)


class CreateVariableArgs(ToolArguments):
    key: str = Field(..., min_length=1)
    value: str


@registry.tool(CreateVariableArgs)
async def create_variable(ctx: ToolContext, args: CreateVariableArgs) -> str:
    """Create a platform variable."""
    await ctx.require_platform().create_variable(args.key, args.value)
    return f"Variable '{args.key}' created."


@registry.tool()
async def list_projects(ctx: ToolContext, args: NoArguments) -> str:
    """List platform projects."""
    projects = await ctx.require_platform().list_projects()
    if not projects:
        return "No projects found."
    return "\n".join(f"  • {p.get('id')}: {p.get('name', 'unnamed')}" for p in projects)
