"""Tests for parsing submitted workflow descriptions."""

import pytest

from flowdoc.errors import WorkflowFormatError
from flowdoc.workflow_graph import parse_workflow

EXPORTED = {
    "name": "Order intake",
    "nodes": [
        {"name": "Webhook", "type": "n8n-nodes-base.webhook", "parameters": {"path": "orders"}},
        {"name": "If", "type": "n8n-nodes-base.if", "parameters": {}},
        {"name": "Slack", "type": "n8n-nodes-base.slack", "credentials": {"slackApi": {"id": "3"}}},
        {"name": "Drop", "type": "n8n-nodes-base.noOp"},
    ],
    "connections": {
        "Webhook": {"main": [[{"node": "If", "type": "main", "index": 0}]]},
        "If": {"main": [
            [{"node": "Slack", "type": "main", "index": 0}],
            [{"node": "Drop", "type": "main", "index": 0}],
        ]},
    },
}


class TestExportFormat:
    def test_parses_nodes(self):
        wf = parse_workflow(EXPORTED)
        assert wf.name == "Order intake"
        assert [n.name for n in wf.nodes] == ["Webhook", "If", "Slack", "Drop"]
        assert wf.nodes[0].parameters == {"path": "orders"}
        assert wf.nodes[2].credentials == {"slackApi": {"id": "3"}}

    def test_positional_ports(self):
        wf = parse_workflow(EXPORTED)
        edges = [(c.source, c.target, c.output_port, c.input_port) for c in wf.connections]
        assert edges == [
            ("Webhook", "If", "main:0", "main:0"),
            ("If", "Slack", "main:0", "main:0"),
            ("If", "Drop", "main:1", "main:0"),
        ]

    def test_empty_output_slot(self):
        wf = parse_workflow({
            "nodes": [{"name": "If", "type": "x.if"}, {"name": "B", "type": "x.b"}],
            "connections": {"If": {"main": [[], [{"node": "B", "type": "main", "index": 0}]]}},
        })
        assert [(c.target, c.output_port) for c in wf.connections] == [("B", "main:1")]

    def test_malformed_export_edge(self):
        with pytest.raises(WorkflowFormatError, match="Malformed connection"):
            parse_workflow({"nodes": [], "connections": {"A": {"main": [[{"index": 0}]]}}})


class TestNativeFormat:
    def test_edge_lists(self):
        wf = parse_workflow({
            "nodes": [{"name": "A", "type": "x.a"}, {"name": "B", "type": "x.b"}],
            "connections": {"A": [{"target": "B", "outputPort": "true", "inputPort": "input2"}]},
        })
        c = wf.connections[0]
        assert (c.source, c.target, c.output_port, c.input_port) == ("A", "B", "true", "input2")

    def test_flat_connection_list(self):
        wf = parse_workflow({
            "nodes": [{"name": "A", "type": "x.a"}, {"name": "B", "type": "x.b"}],
            "connections": [{"source": "A", "target": "B"}],
        })
        assert wf.connections[0].output_port == "main"

    def test_node_key_accepted_as_target(self):
        wf = parse_workflow({"nodes": [], "connections": {"A": [{"node": "B"}]}})
        assert wf.connections[0].target == "B"


class TestMalformed:
    @pytest.mark.parametrize("data", [None, [], "workflow", 3])
    def test_not_an_object(self, data):
        with pytest.raises(WorkflowFormatError):
            parse_workflow(data)

    def test_nodes_not_a_list(self):
        with pytest.raises(WorkflowFormatError, match="must be an array"):
            parse_workflow({"nodes": {"A": {}}})

    def test_node_missing_type(self):
        with pytest.raises(WorkflowFormatError, match="Node #0 \\(A\\)"):
            parse_workflow({"nodes": [{"name": "A"}]})

    def test_connection_without_target(self):
        with pytest.raises(WorkflowFormatError, match="missing its target"):
            parse_workflow({"nodes": [], "connections": {"A": [{"outputPort": "main"}]}})

    def test_non_string_port_name(self):
        with pytest.raises(WorkflowFormatError, match="Connection from 'W' to 'S'"):
            parse_workflow({"connections": {"W": [{"target": "S", "outputPort": 0}]}})

    @pytest.mark.parametrize("index", ["first", None, -1, 1.5])
    def test_invalid_export_index(self, index):
        data = {"connections": {"W": {"main": [[{"node": "S", "type": "main", "index": index}]]}}}
        with pytest.raises(WorkflowFormatError, match="invalid input index"):
            parse_workflow(data)

    def test_export_output_slot_not_a_list(self):
        with pytest.raises(WorkflowFormatError, match="must be an array"):
            parse_workflow({"connections": {"W": {"main": [{"node": "S"}]}}})

    def test_connections_wrong_type(self):
        with pytest.raises(WorkflowFormatError):
            parse_workflow({"nodes": [], "connections": "A->B"})

    def test_missing_sections_are_empty(self):
        wf = parse_workflow({})
        assert wf.nodes == []
        assert wf.connections == []
