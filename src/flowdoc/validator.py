"""Workflow graph validation against the node catalog.

validate_workflow() is a pure function of (graph, index snapshot). It builds a
directed multigraph of the submitted instances and runs every rule in order;
no rule is skipped because an earlier one found problems. Findings are
appended in rule order and, within a rule, in the order instances and
connections were submitted, so the same inputs always give the same report.
"""

import logging
import re
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field

import networkx as nx

from .catalog_index import IndexSnapshot
from .models import (
    Finding,
    FindingCategory,
    NodeDescriptor,
    NodeInstance,
    Port,
    Severity,
    ValidationReport,
    WorkflowGraph,
)

logger = logging.getLogger("flowdoc.validator")

_POSITIONAL_PORT = re.compile(r"^(?P<type>[A-Za-z_][\w]*):(?P<index>\d+)$")

WHITE, GRAY, BLACK = 0, 1, 2


@dataclass
class _Context:
    graph: WorkflowGraph
    index: IndexSnapshot
    instances: dict[str, NodeInstance] = field(default_factory=dict)
    resolved: dict[str, NodeDescriptor] = field(default_factory=dict)
    digraph: nx.MultiDiGraph = field(default_factory=nx.MultiDiGraph)
    findings: list[Finding] = field(default_factory=list)

    def add(
        self,
        rule_id: str,
        category: FindingCategory,
        severity: Severity,
        message: str,
        instances: list[str],
    ) -> None:
        self.findings.append(Finding(
            rule_id=rule_id,
            category=category,
            severity=severity,
            message=message,
            instances=instances,
        ))


def find_port(ports: list[Port], ref: str) -> Port | None:
    """Find a port by name, or by a positional ``type:index`` reference."""
    for port in ports:
        if port.name == ref:
            return port
    match = _POSITIONAL_PORT.match(ref)
    if match:
        typed = [p for p in ports if p.type == match["type"]]
        position = int(match["index"])
        if position < len(typed):
            return typed[position]
    return None


def _build(graph: WorkflowGraph, index: IndexSnapshot) -> _Context:
    ctx = _Context(graph=graph, index=index)
    for node in graph.nodes:
        if node.name in ctx.instances:
            continue
        ctx.instances[node.name] = node
        ctx.digraph.add_node(node.name)
        descriptor = index.resolve(node.type)
        if descriptor is not None:
            ctx.resolved[node.name] = descriptor

    for position, conn in enumerate(graph.connections):
        if conn.source in ctx.instances and conn.target in ctx.instances:
            ctx.digraph.add_edge(
                conn.source,
                conn.target,
                output_port=conn.output_port,
                input_port=conn.input_port,
                position=position,
            )
    return ctx


# =============================================================================
# Rules
# =============================================================================


def check_references(ctx: _Context) -> None:
    """Duplicate names, dangling connection endpoints and unknown node types."""
    counts = Counter(node.name for node in ctx.graph.nodes)
    for name, count in counts.items():
        if count > 1:
            ctx.add("duplicate-instance", "reference", "error",
                    f"Node name '{name}' is used by {count} nodes", [name])

    reported: set[str] = set()
    for conn in ctx.graph.connections:
        for role, name in (("source", conn.source), ("target", conn.target)):
            if name not in ctx.instances and name not in reported:
                reported.add(name)
                ctx.add(f"unknown-{role}", "reference", "error",
                        f"Connection {role} '{name}' does not exist in the workflow", [name])

    for name, node in ctx.instances.items():
        if name in ctx.resolved:
            continue
        message = f"Node '{name}' has unknown type '{node.type}'"
        suggestions = ctx.index.suggest(node.type)
        if suggestions:
            message += f" (did you mean: {', '.join(suggestions)})"
        ctx.add("unknown-node-type", "reference", "error", message, [name])


def check_ports(ctx: _Context) -> None:
    """Port names must exist on both ends and carry the same port type."""
    incoming: Counter[tuple[str, str]] = Counter()
    single_ports: dict[tuple[str, str], Port] = {}

    for conn in ctx.graph.connections:
        source = ctx.resolved.get(conn.source)
        target = ctx.resolved.get(conn.target)
        if source is None or target is None:
            continue

        out_port = find_port(source.outputs, conn.output_port)
        if out_port is None:
            available = ", ".join(p.name for p in source.outputs) or "none"
            ctx.add("unknown-output-port", "schema", "error",
                    f"Node '{conn.source}' has no output port '{conn.output_port}' (available: {available})",
                    [conn.source])

        in_port = find_port(target.inputs, conn.input_port)
        if in_port is None:
            if not target.inputs:
                message = f"Node '{conn.target}' ({target.name}) accepts no input connections"
            else:
                available = ", ".join(p.name for p in target.inputs)
                message = (f"Node '{conn.target}' has no input port '{conn.input_port}' "
                           f"(available: {available})")
            ctx.add("unknown-input-port", "schema", "error", message, [conn.target])

        if out_port is None or in_port is None:
            continue

        if out_port.type != in_port.type:
            ctx.add("port-type-mismatch", "schema", "error",
                    f"Cannot connect '{conn.source}'.{out_port.name} <{out_port.type}> "
                    f"to '{conn.target}'.{in_port.name} <{in_port.type}>",
                    [conn.source, conn.target])

        key = (conn.target, in_port.name)
        incoming[key] += 1
        if in_port.cardinality == "one":
            single_ports[key] = in_port

    for (target, port_name), port in single_ports.items():
        if incoming[(target, port_name)] > 1:
            ctx.add("input-port-cardinality", "schema", "error",
                    f"Input port '{port_name}' of node '{target}' accepts one connection, "
                    f"got {incoming[(target, port_name)]}",
                    [target])


def check_entry_points(ctx: _Context) -> None:
    """Warn when no zero-indegree instance is trigger-capable."""
    if not ctx.instances:
        return
    entry = [name for name in ctx.instances if ctx.digraph.in_degree(name) == 0]
    if any(ctx.resolved.get(name) is not None and ctx.resolved[name].trigger for name in entry):
        return
    listed = ", ".join(entry) if entry else "none"
    ctx.add("no-trigger", "structural", "warning",
            f"no trigger node found (entry points: {listed}); "
            "the workflow can only be started manually or by another workflow",
            entry)


def check_not_empty(ctx: _Context) -> None:
    # Nodes without outgoing connections are legal dead ends
    if not ctx.graph.nodes:
        ctx.add("empty-workflow", "structural", "error", "empty workflow: no nodes defined", [])


def check_cycles(ctx: _Context) -> None:
    """Three-color DFS; each back edge closes a cycle over the active path.

    Loop-tolerant instances (for example a batch splitter) are removed before
    the search, so every cycle found is one with no tolerant member.
    """
    tolerant = {n for n, d in ctx.resolved.items() if d.loop_tolerant}
    if tolerant:
        logger.debug(f"Cycles through loop-tolerant node(s) {sorted(tolerant)} are allowed")
    digraph = ctx.digraph.subgraph(n for n in ctx.digraph if n not in tolerant)

    color = dict.fromkeys(digraph.nodes, WHITE)
    seen: set[frozenset[str]] = set()

    for root in digraph.nodes:
        if color[root] != WHITE:
            continue
        color[root] = GRAY
        path = [root]
        stack = [iter(digraph.successors(root))]

        while stack:
            successor = next(stack[-1], None)
            if successor is None:
                color[path.pop()] = BLACK
                stack.pop()
                continue

            if color[successor] == WHITE:
                color[successor] = GRAY
                path.append(successor)
                stack.append(iter(digraph.successors(successor)))
            elif color[successor] == GRAY:
                cycle = path[path.index(successor):]
                members = frozenset(cycle)
                if members in seen:
                    continue
                seen.add(members)
                route = " → ".join(cycle + [successor])
                ctx.add("cycle", "structural", "error", f"Cycle detected: {route}", list(cycle))


def credential_findings(name: str, node: NodeInstance, descriptor: NodeDescriptor) -> list[Finding]:
    findings = []
    for requirement in descriptor.credentials:
        if requirement.required and not node.credentials.get(requirement.name):
            findings.append(Finding(
                rule_id="missing-credential",
                category="schema",
                severity="warning",
                message=f"missing credential binding for {name}: requires '{requirement.name}'",
                instances=[name],
            ))
    return findings


def property_findings(name: str, node: NodeInstance, descriptor: NodeDescriptor) -> list[Finding]:
    """Required-but-absent and wrongly typed values among the visible properties."""
    values = {p.name: p.default for p in descriptor.properties if p.default is not None}
    values.update(node.parameters)

    findings = []
    for prop in descriptor.properties:
        if not prop.is_visible(values):
            continue
        value = node.parameters.get(prop.name)
        if value is None or value == "":
            if prop.required and prop.default is None:
                findings.append(Finding(
                    rule_id="missing-required-property",
                    category="schema",
                    severity="error",
                    message=f"Node '{name}' is missing required property '{prop.name}'",
                    instances=[name],
                ))
        elif not prop.accepts(value):
            findings.append(Finding(
                rule_id="invalid-property-value",
                category="schema",
                severity="error",
                message=f"Node '{name}' property '{prop.name}' expects {prop.expected()}, got {value!r}",
                instances=[name],
            ))
    return findings


def check_credentials(ctx: _Context) -> None:
    for name, node in ctx.instances.items():
        descriptor = ctx.resolved.get(name)
        if descriptor is not None:
            ctx.findings.extend(credential_findings(name, node, descriptor))


def check_required_properties(ctx: _Context) -> None:
    for name, node in ctx.instances.items():
        descriptor = ctx.resolved.get(name)
        if descriptor is not None:
            ctx.findings.extend(property_findings(name, node, descriptor))


RULES: tuple[Callable[[_Context], None], ...] = (
    check_references,
    check_ports,
    check_entry_points,
    check_not_empty,
    check_cycles,
    check_credentials,
    check_required_properties,
)


def validate_workflow(graph: WorkflowGraph, index: IndexSnapshot) -> ValidationReport:
    """Validate a workflow graph against one catalog index snapshot."""
    ctx = _build(graph, index)
    for rule in RULES:
        rule(ctx)

    report = ValidationReport(
        findings=ctx.findings,
        revision=index.revision,
        node_count=len(graph.nodes),
        connection_count=len(graph.connections),
    )
    logger.info(
        f"Validated workflow '{graph.name or 'unnamed'}' at revision {index.revision}: "
        f"{len(report.errors)} errors, {len(report.warnings)} warnings"
    )
    return report


def validate_node(
    descriptor: NodeDescriptor,
    parameters: dict,
    credentials: dict | None = None,
    instance_name: str = "node",
) -> list[Finding]:
    """Credential and property findings for a single node configuration."""
    node = NodeInstance(
        name=instance_name,
        type=descriptor.name,
        parameters=parameters or {},
        credentials=credentials or {},
    )
    return credential_findings(instance_name, node, descriptor) + property_findings(instance_name, node, descriptor)
