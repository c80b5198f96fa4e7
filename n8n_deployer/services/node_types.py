"""
Node Type Registry
Maps n8n node type identifiers to the capability they provide.

Validators never switch on raw type strings: they ask the registry for a
NodeTypeSpec and dispatch on its NodeCapability. New node types are added
with NodeTypeRegistry.register().
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Optional, Tuple


class NodeCapability(str, Enum):
    """What a node does, independent of which n8n type implements it."""
    TRIGGER = "trigger"
    WEBHOOK_TRIGGER = "webhook-trigger"
    HTTP_CALL = "http-call"
    CONDITIONAL = "conditional"
    CODE = "code"
    TRANSFORM = "transform"
    SERVICE_CONNECTOR = "service-connector"
    DATABASE = "database"
    FLOW_CONTROL = "flow-control"
    ANNOTATION = "annotation"


TRIGGER_CAPABILITIES = frozenset({NodeCapability.TRIGGER, NodeCapability.WEBHOOK_TRIGGER})


@dataclass(frozen=True)
class NodeTypeSpec:
    """Definition of an n8n node type."""
    type: str
    capability: NodeCapability
    display_name: str
    required_params: Tuple[str, ...] = ()
    requires_credentials: bool = False
    estimated_ms: int = 50
    code_param: Optional[str] = None  # For CODE nodes


class NodeTypeRegistry:
    """Registry of node types the target n8n instance supports."""

    def __init__(self, specs: Iterable[NodeTypeSpec] = (), denied: Iterable[str] = ()):
        self._specs: Dict[str, NodeTypeSpec] = {}
        self._denied = set(denied)
        for spec in specs:
            self.register(spec)

    def register(self, spec: NodeTypeSpec) -> None:
        self._specs[spec.type] = spec

    def deny(self, node_type: str) -> None:
        self._denied.add(node_type)

    def _spec(self, node_type) -> Optional[NodeTypeSpec]:
        # Type ids come from untrusted definitions and may be any JSON value
        return self._specs.get(node_type) if isinstance(node_type, str) else None

    def get(self, node_type: str) -> Optional[NodeTypeSpec]:
        return self._spec(node_type)

    def is_known(self, node_type: str) -> bool:
        return self._spec(node_type) is not None

    def is_denied(self, node_type: str) -> bool:
        return isinstance(node_type, str) and node_type in self._denied

    def capability_of(self, node_type: str) -> Optional[NodeCapability]:
        """
        Capability of a node type. Unregistered community nodes follow the
        n8n naming convention: a type ending in "Trigger" is a trigger.
        """
        spec = self._spec(node_type)
        if spec is not None:
            return spec.capability
        if isinstance(node_type, str) and node_type.endswith("Trigger"):
            return NodeCapability.TRIGGER
        return None

    def is_trigger(self, node_type: str) -> bool:
        return self.capability_of(node_type) in TRIGGER_CAPABILITIES

    def has_capability(self, node_type: str, capability: NodeCapability) -> bool:
        return self.capability_of(node_type) == capability

    def requires_credentials(self, node_type: str) -> bool:
        spec = self._spec(node_type)
        return bool(spec and spec.requires_credentials)

    def display_name(self, node_type: str) -> str:
        spec = self._spec(node_type)
        if spec is not None:
            return spec.display_name
        if not isinstance(node_type, str) or not node_type:
            return "Node"
        return node_type.split(".")[-1] or "Node"

    def __len__(self) -> int:
        return len(self._specs)

    def __contains__(self, node_type: str) -> bool:
        return self._spec(node_type) is not None


def _base(name: str) -> str:
    return f"n8n-nodes-base.{name}"


_DEFAULT_SPECS = (
    # Triggers
    NodeTypeSpec(_base("manualTrigger"), NodeCapability.TRIGGER, "Manual Trigger"),
    NodeTypeSpec(_base("scheduleTrigger"), NodeCapability.TRIGGER, "Schedule Trigger"),
    NodeTypeSpec(_base("cron"), NodeCapability.TRIGGER, "Schedule"),
    NodeTypeSpec(_base("start"), NodeCapability.TRIGGER, "Start"),
    NodeTypeSpec(_base("errorTrigger"), NodeCapability.TRIGGER, "Error Trigger"),
    NodeTypeSpec(_base("emailReadImap"), NodeCapability.TRIGGER, "Email Trigger (IMAP)",
                 requires_credentials=True),
    NodeTypeSpec(_base("webhook"), NodeCapability.WEBHOOK_TRIGGER, "Webhook",
                 required_params=("path",)),
    NodeTypeSpec(_base("formTrigger"), NodeCapability.WEBHOOK_TRIGGER, "Form Trigger"),

    # Outbound calls
    NodeTypeSpec(_base("httpRequest"), NodeCapability.HTTP_CALL, "HTTP Request",
                 required_params=("url",), estimated_ms=1000),

    # Branching
    NodeTypeSpec(_base("if"), NodeCapability.CONDITIONAL, "IF", required_params=("conditions",)),
    NodeTypeSpec(_base("switch"), NodeCapability.CONDITIONAL, "Switch"),
    NodeTypeSpec(_base("filter"), NodeCapability.CONDITIONAL, "Filter"),

    # Code
    NodeTypeSpec(_base("function"), NodeCapability.CODE, "Function",
                 required_params=("functionCode",), estimated_ms=100, code_param="functionCode"),
    NodeTypeSpec(_base("functionItem"), NodeCapability.CODE, "Function Item",
                 required_params=("functionCode",), estimated_ms=100, code_param="functionCode"),
    NodeTypeSpec(_base("code"), NodeCapability.CODE, "Code", estimated_ms=100, code_param="jsCode"),

    # Data shaping
    NodeTypeSpec(_base("set"), NodeCapability.TRANSFORM, "Set"),
    NodeTypeSpec(_base("merge"), NodeCapability.TRANSFORM, "Merge"),
    NodeTypeSpec(_base("itemLists"), NodeCapability.TRANSFORM, "Item Lists"),
    NodeTypeSpec(_base("splitInBatches"), NodeCapability.FLOW_CONTROL, "Split In Batches"),
    NodeTypeSpec(_base("wait"), NodeCapability.FLOW_CONTROL, "Wait"),
    NodeTypeSpec(_base("noOp"), NodeCapability.FLOW_CONTROL, "No Operation"),
    NodeTypeSpec(_base("respondToWebhook"), NodeCapability.FLOW_CONTROL, "Respond to Webhook"),
    NodeTypeSpec(_base("executeWorkflow"), NodeCapability.FLOW_CONTROL, "Execute Workflow"),
    NodeTypeSpec(_base("stopAndError"), NodeCapability.FLOW_CONTROL, "Stop and Error"),
    NodeTypeSpec(_base("stickyNote"), NodeCapability.ANNOTATION, "Sticky Note"),

    # External services (stored credentials required)
    NodeTypeSpec(_base("gmail"), NodeCapability.SERVICE_CONNECTOR, "Gmail",
                 requires_credentials=True, estimated_ms=800),
    NodeTypeSpec(_base("googleDrive"), NodeCapability.SERVICE_CONNECTOR, "Google Drive",
                 requires_credentials=True, estimated_ms=800),
    NodeTypeSpec(_base("googleSheets"), NodeCapability.SERVICE_CONNECTOR, "Google Sheets",
                 requires_credentials=True, estimated_ms=800),
    NodeTypeSpec(_base("slack"), NodeCapability.SERVICE_CONNECTOR, "Slack",
                 requires_credentials=True, estimated_ms=500),
    NodeTypeSpec(_base("telegram"), NodeCapability.SERVICE_CONNECTOR, "Telegram",
                 requires_credentials=True, estimated_ms=500),
    NodeTypeSpec(_base("discord"), NodeCapability.SERVICE_CONNECTOR, "Discord",
                 requires_credentials=True, estimated_ms=500),
    NodeTypeSpec(_base("notion"), NodeCapability.SERVICE_CONNECTOR, "Notion",
                 requires_credentials=True, estimated_ms=800),
    NodeTypeSpec(_base("airtable"), NodeCapability.SERVICE_CONNECTOR, "Airtable",
                 requires_credentials=True, estimated_ms=800),
    NodeTypeSpec(_base("github"), NodeCapability.SERVICE_CONNECTOR, "GitHub",
                 requires_credentials=True, estimated_ms=800),
    NodeTypeSpec(_base("openAi"), NodeCapability.SERVICE_CONNECTOR, "OpenAI",
                 requires_credentials=True, estimated_ms=3000),
    NodeTypeSpec(_base("emailSend"), NodeCapability.SERVICE_CONNECTOR, "Send Email",
                 requires_credentials=True, estimated_ms=500),

    # Databases
    NodeTypeSpec(_base("postgres"), NodeCapability.DATABASE, "Postgres",
                 requires_credentials=True, estimated_ms=500),
    NodeTypeSpec(_base("mySql"), NodeCapability.DATABASE, "MySQL",
                 requires_credentials=True, estimated_ms=500),
    NodeTypeSpec(_base("mongoDb"), NodeCapability.DATABASE, "MongoDB",
                 requires_credentials=True, estimated_ms=500),
    NodeTypeSpec(_base("redis"), NodeCapability.DATABASE, "Redis",
                 requires_credentials=True, estimated_ms=200),

    # Known to the engine; usually denied for multi-tenant deployments
    NodeTypeSpec(_base("executeCommand"), NodeCapability.CODE, "Execute Command",
                 required_params=("command",), estimated_ms=500),
)


def default_registry(denied: Iterable[str] = ()) -> NodeTypeRegistry:
    """Registry of the n8n core node types."""
    return NodeTypeRegistry(_DEFAULT_SPECS, denied=denied)


def registry_from_settings(settings) -> NodeTypeRegistry:
    """Default registry with the configured deny-list applied."""
    return default_registry(denied=settings.denied_node_types)
