"""Tests for the flow graph model and loader."""

import json

import pytest

from chatflow.conversation.graph import (
    Edge,
    FlowGraph,
    FlowLoader,
    GraphError,
    Node,
    NodeType,
    normalize_node_type,
)


class TestNodeTypeNormalization:
    """Test alias normalization of authoring type tags."""

    @pytest.mark.parametrize("raw, expected", [
        ("startNode", NodeType.START),
        ("text", NodeType.MESSAGE),
        ("capture", NodeType.INPUT),
        ("conditional", NodeType.CONDITION),
        ("ai_response", NodeType.TEXT_GENERATION),
        ("agenteVozIA", NodeType.COMBINED_VOICE_AGENT),
        ("ai-voice-agent", NodeType.COMBINED_VOICE_AGENT),
        ("text-to-speech", NodeType.TEXT_TO_SPEECH),
        ("sttNode", NodeType.SPEECH_TO_TEXT),
        ("buttonsNode", NodeType.BUTTONS),
        ("listNode", NodeType.LIST),
        ("endNode", NodeType.END),
        ("routerNode", NodeType.ROUTER),
        ("actionNode", NodeType.ACTION),
    ])
    def test_known_aliases(self, raw, expected):
        assert normalize_node_type(raw) == expected

    def test_voice_agent_spelling_variant(self):
        """Any tag mentioning both voice and ai is a combined voice agent."""
        assert normalize_node_type("MyVoiceAINode") == NodeType.COMBINED_VOICE_AGENT

    def test_unknown_tags(self):
        assert normalize_node_type("webhookNode") == NodeType.UNKNOWN
        assert normalize_node_type("") == NodeType.UNKNOWN
        assert normalize_node_type(None) == NodeType.UNKNOWN


class TestFlowGraph:
    """Test graph construction, validation and queries."""

    @pytest.fixture
    def graph(self):
        nodes = [
            Node("start", NodeType.START),
            Node("ask", NodeType.BUTTONS, {"buttons": ["A", "B"]}),
            Node("a", NodeType.MESSAGE, {"message": "A"}),
            Node("b", NodeType.MESSAGE, {"message": "B"}),
            Node("end", NodeType.END),
        ]
        edges = [
            Edge("start", "ask"),
            Edge("ask", "a", "handle-0"),
            Edge("ask", "b", "handle-1"),
            Edge("a", "end"),
            Edge("b", "end"),
        ]
        return FlowGraph(nodes, edges)

    def test_queries(self, graph):
        assert len(graph) == 5
        assert "ask" in graph
        assert graph.get_node("missing") is None
        assert graph.find_start_node().id == "start"
        assert [edge.target for edge in graph.outgoing("ask")] == ["a", "b"]
        assert [edge.source for edge in graph.incoming("end")] == ["a", "b"]
        assert [node.id for node in graph.successors("ask")] == ["a", "b"]

    def test_duplicate_node_id_rejected(self):
        with pytest.raises(GraphError):
            FlowGraph([Node("x", NodeType.START), Node("x", NodeType.END)], [])

    def test_dangling_edge_rejected(self):
        with pytest.raises(GraphError):
            FlowGraph([Node("start", NodeType.START)], [Edge("start", "ghost")])

    def test_duplicate_handle_rejected(self):
        nodes = [
            Node("c", NodeType.CONDITION, {"options": ["yes", "no"]}),
            Node("a", NodeType.END),
            Node("b", NodeType.END),
        ]
        edges = [Edge("c", "a", "yes"), Edge("c", "b", "yes")]
        with pytest.raises(GraphError, match="more than one edge"):
            FlowGraph(nodes, edges)

    def test_condition_handle_must_match_an_option(self):
        nodes = [Node("c", NodeType.CONDITION, {"options": ["si", "no"]}), Node("a", NodeType.END)]
        with pytest.raises(GraphError, match="handle 'yes'"):
            FlowGraph(nodes, [Edge("c", "a", "yes")])

    def test_condition_without_options_accepts_true_and_false(self):
        nodes = [Node("c", NodeType.CONDITION), Node("t", NodeType.END), Node("f", NodeType.END)]
        graph = FlowGraph(nodes, [Edge("c", "t", "true"), Edge("c", "f", "false")])
        assert len(graph.outgoing("c")) == 2

    def test_condition_option_objects_use_value_handles(self):
        options = [{"label": "Yes", "value": "yes"}, {"label": "Other"}]
        nodes = [Node("c", NodeType.CONDITION, {"options": options}), Node("a", NodeType.END),
                 Node("b", NodeType.END)]
        graph = FlowGraph(nodes, [Edge("c", "a", "yes"), Edge("c", "b", "handle-1")])
        assert [edge.handle for edge in graph.outgoing("c")] == ["yes", "handle-1"]

    def test_button_handle_out_of_range(self):
        nodes = [Node("b", NodeType.BUTTONS, {"buttons": ["One", "Two"]}), Node("x", NodeType.END)]
        with pytest.raises(GraphError):
            FlowGraph(nodes, [Edge("b", "x", "handle-2")])

    def test_list_items_beyond_fifth_cannot_be_connected(self):
        items = [f"Item {i}" for i in range(6)]
        nodes = [Node("l", NodeType.LIST, {"listItems": items}), Node("x", NodeType.END)]
        FlowGraph(nodes, [Edge("l", "x", "handle-4")])
        with pytest.raises(GraphError):
            FlowGraph(nodes, [Edge("l", "x", "handle-5")])

    def test_handles_on_other_node_types_are_not_checked(self):
        nodes = [Node("m", NodeType.MESSAGE), Node("x", NodeType.END)]
        graph = FlowGraph(nodes, [Edge("m", "x", "anything")])
        assert graph.outgoing("m")[0].handle == "anything"

    def test_first_start_node_wins(self):
        graph = FlowGraph([Node("s1", NodeType.START), Node("s2", NodeType.START)], [])
        assert graph.find_start_node().id == "s1"

    def test_no_start_node(self):
        graph = FlowGraph([Node("m", NodeType.MESSAGE)], [])
        assert graph.find_start_node() is None

    def test_empty_property_treated_as_missing(self):
        node = Node("m", NodeType.MESSAGE, {"message": ""})
        assert node.get("message", "fallback") == "fallback"


class TestFlowLoader:
    """Test loading flow documents."""

    def test_load_authoring_document(self):
        document = {
            "nodes": [
                {"id": "1", "type": "startNode", "data": {}},
                {"id": "2", "type": "messageNode", "data": {"message": "Hi"}},
            ],
            "edges": [{"source": "1", "target": "2", "sourceHandle": None}],
        }

        graph = FlowLoader.load_flow_from_dict(document)

        node = graph.get_node("2")
        assert node.type == NodeType.MESSAGE
        assert node.raw_type == "messageNode"
        assert node.get("message") == "Hi"
        assert graph.edges[0].handle is None

    def test_properties_are_read_only(self):
        graph = FlowLoader.load_flow_from_dict(
            {"nodes": [{"id": "1", "type": "start", "properties": {"a": 1}}], "edges": []}
        )
        with pytest.raises(TypeError):
            graph.get_node("1").properties["a"] = 2

    def test_invalid_document(self):
        with pytest.raises(GraphError):
            FlowLoader.load_flow_from_dict({"nodes": [{"type": "start"}]})

    def test_load_json_file(self, tmp_path):
        path = tmp_path / "flow.json"
        path.write_text(json.dumps({
            "nodes": [{"id": "s", "type": "start"}, {"id": "e", "type": "end"}],
            "edges": [{"source": "s", "target": "e"}],
        }))

        graph = FlowLoader.load_flow_from_file(path)

        assert [node.type for node in graph.nodes] == [NodeType.START, NodeType.END]

    def test_load_yaml_file(self, tmp_path):
        path = tmp_path / "flow.yaml"
        path.write_text(
            "nodes:\n"
            "  - id: s\n"
            "    type: startNode\n"
            "  - id: m\n"
            "    type: message\n"
            "    data:\n"
            "      message: Hello\n"
            "edges:\n"
            "  - source: s\n"
            "    target: m\n"
        )

        graph = FlowLoader.load_flow_from_file(path)

        assert graph.get_node("m").get("message") == "Hello"

    def test_missing_file(self, tmp_path):
        with pytest.raises(GraphError):
            FlowLoader.load_flow_from_file(tmp_path / "missing.json")
