"""Tests for the structure -> business -> compatibility validation chain."""
from n8n_deployer.models.schemas import Severity, ValidationLayer, WorkflowDefinition
from n8n_deployer.services.node_types import default_registry
from n8n_deployer.services.validator import (
    ValidationLimits,
    validate_business,
    validate_structure,
    validate_workflow,
)


def codes(issues):
    return [issue.code for issue in issues]


class TestChain:
    def test_valid_workflow_passes_every_layer(self, workflow_factory):
        result = validate_workflow(workflow_factory())

        assert result.valid is True
        assert result.errors == []
        assert result.failed_layer is None
        assert {"structure", "business", "compatibility", "total"} <= set(result.timings)
        assert result.execution_id

    def test_accepts_model_instance(self, workflow_factory):
        model = WorkflowDefinition.model_validate(workflow_factory())
        assert validate_workflow(model).valid is True

    def test_duplicate_node_id_blocks_compatibility(self, workflow_factory, node_factory):
        workflow = workflow_factory()
        workflow["nodes"].append(node_factory("2", "Other"))

        result = validate_workflow(workflow)

        assert result.valid is False
        assert result.failed_layer == ValidationLayer.BUSINESS
        duplicate = next(e for e in result.errors if e.code == "DUPLICATE_NODE_ID")
        assert duplicate.severity == Severity.CRITICAL
        assert duplicate.fixable is True
        assert "compatibility" not in result.timings

    def test_sixty_nodes_fail_in_business_layer(self, node_factory):
        nodes = [node_factory("0", "Start", "n8n-nodes-base.manualTrigger")]
        nodes += [node_factory(str(i), f"Step {i}") for i in range(1, 60)]
        workflow = {"name": "Big", "active": False, "nodes": nodes, "connections": {}}

        result = validate_workflow(workflow)

        assert result.failed_layer == ValidationLayer.BUSINESS
        assert "TOO_MANY_NODES" in codes(result.errors)
        assert "LARGE_WORKFLOW" in codes(result.warnings)

    def test_custom_limits_are_honoured(self, workflow_factory):
        result = validate_workflow(workflow_factory(), limits=ValidationLimits(max_nodes=2))
        assert "TOO_MANY_NODES" in codes(result.errors)


class TestStructure:
    def test_missing_nodes(self):
        result = validate_workflow({"name": "x", "active": False, "connections": {}})
        assert result.failed_layer == ValidationLayer.STRUCTURE
        assert "MISSING_NODES" in codes(result.errors)

    def test_empty_nodes(self):
        result = validate_workflow({"name": "x", "active": False, "nodes": [], "connections": {}})
        assert codes(result.errors) == ["EMPTY_WORKFLOW"]

    def test_missing_name_is_fixable(self, workflow_factory):
        workflow = workflow_factory()
        del workflow["name"]
        issues = validate_structure(workflow)
        missing = next(i for i in issues if i.code == "MISSING_NAME")
        assert missing.fixable is True

    def test_name_too_long(self, workflow_factory):
        assert "NAME_TOO_LONG" in codes(validate_structure(workflow_factory(name="x" * 256)))

    def test_missing_node_id(self, workflow_factory):
        workflow = workflow_factory()
        del workflow["nodes"][1]["id"]
        issues = validate_structure(workflow)
        assert "MISSING_NODE_ID" in codes(issues)
        assert issues[0].path == "nodes.1.id"

    def test_string_type_version_is_not_coerced(self, workflow_factory):
        workflow = workflow_factory()
        workflow["nodes"][0]["typeVersion"] = "1"
        assert "INVALID_TYPE" in codes(validate_structure(workflow))

    def test_position_needs_two_numbers(self, workflow_factory):
        workflow = workflow_factory()
        workflow["nodes"][0]["position"] = [1]
        assert codes(validate_structure(workflow)) == ["INVALID_POSITION"]

    def test_non_object_definition(self):
        assert codes(validate_structure([1, 2, 3])) == ["INVALID_TYPE"]

    def test_malformed_connection(self, workflow_factory):
        workflow = workflow_factory()
        workflow["connections"]["Webhook"] = {"main": [["Format"]]}
        result = validate_workflow(workflow)
        assert result.failed_layer == ValidationLayer.STRUCTURE
        assert codes(result.errors) == ["MALFORMED_CONNECTION"]

    def test_null_output_group_is_allowed(self, workflow_factory):
        workflow = workflow_factory()
        workflow["connections"]["Format"]["main"].append(None)
        assert validate_structure(workflow) == []

    def test_empty_node_name_on_enabled_node(self, workflow_factory):
        workflow = workflow_factory()
        workflow["nodes"][1]["name"] = "  "
        assert "MISSING_NODE_NAME" in codes(validate_structure(workflow))


class TestBusiness:
    def test_invalid_name_characters(self, workflow_factory):
        errors, _ = validate_business(workflow_factory(name="orders/intake"))
        assert codes(errors) == ["INVALID_WORKFLOW_NAME"]

    def test_duplicate_node_name(self, workflow_factory, node_factory):
        workflow = workflow_factory()
        workflow["nodes"].append(node_factory("4", "Format"))
        errors, _ = validate_business(workflow)
        assert codes(errors) == ["DUPLICATE_NODE_NAME"]

    def test_dangerous_node_type(self, workflow_factory, node_factory):
        workflow = workflow_factory()
        workflow["nodes"].append(node_factory("4", "Evil", "n8n-nodes-base.__proto__"))
        errors, _ = validate_business(workflow)
        assert "INVALID_NODE_TYPE" in codes(errors)

    def test_node_cosmetics(self, workflow_factory):
        workflow = workflow_factory()
        workflow["nodes"][1]["color"] = "red"
        workflow["nodes"][1]["notes"] = "n" * 1001
        errors, _ = validate_business(workflow)
        assert set(codes(errors)) == {"INVALID_COLOR", "NOTES_TOO_LONG"}

    def test_many_http_requests_is_a_warning(self, node_factory):
        nodes = [node_factory("0", "Start", "n8n-nodes-base.manualTrigger")]
        nodes += [
            node_factory(str(i), f"Call {i}", "n8n-nodes-base.httpRequest", parameters={"url": "https://x.io"})
            for i in range(1, 12)
        ]
        errors, warnings = validate_business({"name": "Calls", "active": False, "nodes": nodes, "connections": {}})
        assert errors == []
        assert "MANY_HTTP_REQUESTS" in codes(warnings)


class TestCompatibility:
    def test_one_error_per_invalid_reference(self, workflow_factory):
        workflow = workflow_factory()
        workflow["connections"]["Webhook"]["main"][0].append({"node": "Ghost", "type": "main", "index": 0})
        workflow["connections"]["Phantom"] = {"main": [[{"node": "Send", "type": "main", "index": 0}]]}

        result = validate_workflow(workflow)

        assert result.failed_layer == ValidationLayer.COMPATIBILITY
        assert codes(result.errors).count("INVALID_CONNECTION") == 2

    def test_references_resolve_by_id(self, workflow_factory):
        workflow = workflow_factory()
        workflow["connections"] = {
            "1": {"main": [[{"node": "2", "type": "main", "index": 0}]]},
            "2": {"main": [[{"node": "3", "type": "main", "index": 0}]]},
        }
        result = validate_workflow(workflow)
        assert result.valid is True
        assert result.warnings == []

    def test_denied_node_type(self, workflow_factory, node_factory):
        workflow = workflow_factory()
        workflow["nodes"].append(node_factory("4", "Shell", "n8n-nodes-base.executeCommand"))
        workflow["connections"]["Send"] = {"main": [[{"node": "Shell", "type": "main", "index": 0}]]}
        registry = default_registry(denied=["n8n-nodes-base.executeCommand"])

        result = validate_workflow(workflow, registry=registry)

        denied = next(e for e in result.errors if e.code == "DENIED_NODE_TYPE")
        assert denied.severity == Severity.CRITICAL

    def test_unknown_node_type_warns_unless_strict(self, workflow_factory):
        workflow = workflow_factory()
        workflow["nodes"][1]["type"] = "community.fancyNode"

        lenient = validate_workflow(workflow)
        strict = validate_workflow(workflow, limits=ValidationLimits(strict_node_types=True))

        assert lenient.valid is True
        assert "UNKNOWN_NODE_TYPE" in codes(lenient.warnings)
        assert strict.valid is False
        assert "UNSUPPORTED_NODE_TYPE" in codes(strict.errors)

    def test_missing_credentials_is_not_fixable(self, workflow_factory, node_factory):
        workflow = workflow_factory()
        workflow["nodes"].append(node_factory("4", "Notify", "n8n-nodes-base.slack"))
        workflow["connections"]["Send"] = {"main": [[{"node": "Notify", "type": "main", "index": 0}]]}

        result = validate_workflow(workflow)

        missing = next(e for e in result.errors if e.code == "MISSING_CREDENTIALS")
        assert missing.fixable is False
        assert result.has_fixable_errors is False

    def test_cycle_is_critical(self, workflow_factory):
        workflow = workflow_factory()
        workflow["connections"]["Send"] = {"main": [[{"node": "Format", "type": "main", "index": 0}]]}

        result = validate_workflow(workflow)

        cycle = next(e for e in result.errors if e.code == "CIRCULAR_DEPENDENCY")
        assert cycle.severity == Severity.CRITICAL
        assert "Format" in cycle.message

    def test_unreachable_node_warning(self, workflow_factory, node_factory):
        workflow = workflow_factory()
        workflow["nodes"].append(node_factory("4", "Orphan"))
        workflow["nodes"].append(node_factory("5", "Note", "n8n-nodes-base.stickyNote"))
        workflow["nodes"].append(node_factory("6", "Off", disabled=True))

        result = validate_workflow(workflow)

        assert result.valid is True
        unreachable = [w for w in result.warnings if w.code == "UNREACHABLE_NODE"]
        assert [w.node_id for w in unreachable] == ["4"]

    def test_no_trigger_warning(self, node_factory):
        workflow = {
            "name": "Manual",
            "active": False,
            "nodes": [node_factory("1", "A"), node_factory("2", "B")],
            "connections": {"A": {"main": [[{"node": "B", "type": "main", "index": 0}]]}},
        }
        result = validate_workflow(workflow)
        assert result.valid is True
        assert codes(result.warnings) == ["NO_TRIGGER"]
