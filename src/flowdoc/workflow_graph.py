"""Parse client-submitted workflow descriptions into WorkflowGraph models.

Two connection layouts are accepted:

Native, one list of edges per source instance::

    {"Webhook": [{"target": "Set", "outputPort": "main", "inputPort": "main"}]}

Platform export, output type -> output index -> edges::

    {"Webhook": {"main": [[{"node": "Set", "type": "main", "index": 0}]]}}

Export edges carry positional port references (``main:0``) that the validator
resolves against the descriptor's ports of that type.
"""

from typing import Any

from pydantic import ValidationError

from .errors import WorkflowFormatError
from .models import Connection, NodeInstance, WorkflowGraph


def positional_port(port_type: str, index: int) -> str:
    return f"{port_type}:{index}"


def _format_error(prefix: str, e: ValidationError) -> WorkflowFormatError:
    details = "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'value'}: {err['msg']}" for err in e.errors()
    )
    return WorkflowFormatError(f"{prefix}: {details}")


def _parse_nodes(raw: Any) -> list[NodeInstance]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise WorkflowFormatError("Workflow 'nodes' must be an array")
    nodes = []
    for i, item in enumerate(raw):
        if not isinstance(item, dict):
            raise WorkflowFormatError(f"Node #{i} must be an object")
        try:
            nodes.append(NodeInstance.model_validate(item))
        except ValidationError as e:
            raise _format_error(f"Node #{i} ({item.get('name', 'unnamed')})", e) from e
    return nodes


def _edge(source: str, item: Any) -> Connection:
    if not isinstance(item, dict):
        raise WorkflowFormatError(f"Connection from '{source}' must be an object")
    target = item.get("target", item.get("node"))
    if not isinstance(target, str) or not target:
        raise WorkflowFormatError(f"Connection from '{source}' is missing its target")
    try:
        return Connection(
            source=source,
            target=target,
            output_port=item.get("outputPort", item.get("output_port", "main")),
            input_port=item.get("inputPort", item.get("input_port", "main")),
        )
    except ValidationError as e:
        raise _format_error(f"Connection from '{source}' to '{target}'", e) from e


def _export_edges(source: str, by_type: dict) -> list[Connection]:
    edges = []
    for output_type, outputs in by_type.items():
        if not isinstance(outputs, list):
            raise WorkflowFormatError(f"Connections of '{source}'.{output_type} must be an array")
        for output_index, targets in enumerate(outputs):
            if targets is not None and not isinstance(targets, list):
                raise WorkflowFormatError(f"Output {output_index} of '{source}'.{output_type} must be an array")
            for item in targets or []:
                if not isinstance(item, dict) or not isinstance(item.get("node"), str):
                    raise WorkflowFormatError(f"Malformed connection from '{source}'.{output_type}")
                index = item.get("index", 0)
                if isinstance(index, bool) or not isinstance(index, int | str) or not str(index).isdigit():
                    raise WorkflowFormatError(
                        f"Connection from '{source}' to '{item['node']}' has invalid input index {index!r}"
                    )
                edges.append(Connection(
                    source=source,
                    target=item["node"],
                    output_port=positional_port(output_type, output_index),
                    input_port=positional_port(str(item.get("type", output_type)), int(index)),
                ))
    return edges


def _parse_connections(raw: Any) -> list[Connection]:
    if raw is None:
        return []
    if isinstance(raw, list):
        try:
            return [Connection.model_validate(item) for item in raw]
        except ValidationError as e:
            raise _format_error("Connection", e) from e
    if not isinstance(raw, dict):
        raise WorkflowFormatError("Workflow 'connections' must be an object")

    connections: list[Connection] = []
    for source, value in raw.items():
        if isinstance(value, list):
            connections.extend(_edge(source, item) for item in value)
        elif isinstance(value, dict):
            connections.extend(_export_edges(source, value))
        else:
            raise WorkflowFormatError(f"Connections of '{source}' must be an array or object")
    return connections


def parse_workflow(data: Any) -> WorkflowGraph:
    """Build a WorkflowGraph from a decoded JSON workflow description.

    Raises:
        WorkflowFormatError: If the description does not have a workflow's shape.
    """
    if isinstance(data, WorkflowGraph):
        return data
    if not isinstance(data, dict):
        raise WorkflowFormatError("Workflow must be a JSON object with 'nodes' and 'connections'")
    return WorkflowGraph(
        name=str(data.get("name") or ""),
        nodes=_parse_nodes(data.get("nodes")),
        connections=_parse_connections(data.get("connections")),
    )
