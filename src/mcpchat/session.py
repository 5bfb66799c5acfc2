from typing import Iterable, Optional

from src.mcpchat.autopilot import AutopilotController, FollowUpGenerator, FollowUpSink
from src.mcpchat.config import AutopilotConfig, MCPChatSettings, ServerConfig, load_server_configs
from src.mcpchat.context_pruning import ConversationPruner
from src.mcpchat.models import ConversationTurn, ToolCall
from src.mcpchat.tool_dispatcher import DispatchableTool, ToolDispatcher
from src.mcpchat.tool_registry import ToolRegistry
from src.mcpchat.utils.audit import AuditLogger
from src.utils.logger import get_logger


class ChatSession:
    """
    Orchestration context for one conversation.

    Owns the registry, dispatcher, pruner and (optionally) the autopilot, so
    nothing is shared between sessions through module-level singletons.
    """

    def __init__(
        self,
        settings: Optional[MCPChatSettings] = None,
        registry: Optional[ToolRegistry] = None,
        pruner: Optional[ConversationPruner] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self.settings = settings or MCPChatSettings()
        self.registry = registry or ToolRegistry(
            connection_timeout=self.settings.connection_timeout
        )
        if audit_logger is None and self.settings.audit_enabled:
            audit_logger = AuditLogger(self.settings.audit_config())
        self.audit_logger = audit_logger
        self.dispatcher = ToolDispatcher(self.registry, audit_logger)
        self.pruner = pruner or ConversationPruner(retention=self.settings.prune_retention)
        self.history: list[ConversationTurn] = []
        self.autopilot: Optional[AutopilotController] = None
        self.logger = get_logger("ChatSession")

    async def __aenter__(self) -> "ChatSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def start(self, configs: Optional[Iterable[ServerConfig]] = None) -> list[str]:
        """Connect every configured server; returns the names that came up."""
        if configs is None:
            configs = load_server_configs(self.settings)
        return await self.registry.connect_all(configs)

    async def tools(self) -> dict[str, DispatchableTool]:
        return await self.dispatcher.build_tools()

    def append(self, turn: ConversationTurn) -> ConversationTurn:
        self.history.append(turn)
        return turn

    def add_user_message(self, content: str) -> ConversationTurn:
        return self.append(ConversationTurn(role="user", content=content))

    async def run_tool_calls(self, calls: Iterable[ToolCall]) -> list[ConversationTurn]:
        """Dispatch a model response's tool calls in order and record each result."""
        turns = []
        for tool_call, result in await self.dispatcher.run_tool_calls(calls):
            turns.append(self.append(ConversationTurn(
                role="tool",
                tool_call=tool_call,
                tool_result=result.to_payload(),
            )))
        return turns

    def complete_assistant_turn(self, content: str) -> ConversationTurn:
        """Record the model's reply and give the autopilot a chance to continue."""
        turn = self.append(ConversationTurn(role="assistant", content=content))
        if self.autopilot is not None:
            self.autopilot.on_turn_completed(turn)
        return turn

    def bounded_history(self) -> list[ConversationTurn]:
        """History to submit with the next model call, with superseded payloads pruned."""
        return self.pruner.safe_prune(self.history)

    def enable_autopilot(
        self,
        generator: FollowUpGenerator,
        deliver: FollowUpSink,
        config: Optional[AutopilotConfig] = None,
    ) -> AutopilotController:
        if self.autopilot is not None:
            self.autopilot.disable()
        self.autopilot = AutopilotController(
            generator=generator,
            deliver=deliver,
            history=self.bounded_history,
            config=config or self.settings.autopilot_config(),
        )
        self.autopilot.enable()
        return self.autopilot

    def disable_autopilot(self) -> None:
        if self.autopilot is not None:
            self.autopilot.disable()

    async def close(self) -> None:
        """Stop the autopilot and release every server connection."""
        if self.autopilot is not None:
            await self.autopilot.shutdown()
        await self.registry.disconnect_all()
        if self.audit_logger is not None:
            self.audit_logger.close()
            self.audit_logger = None
            self.dispatcher.audit_logger = None
        self.logger.info("✅ Session closed")
