"""Wires the workspace components together with an explicit lifecycle."""
from __future__ import annotations

import logging
from typing import Any

from devspace.shared.services.policy_guard import PolicyGuard, PolicyRuleSet
from devspace.shared.services.version_store import VersionStore

from .action_executor import ActionExecutor
from .config import WorkspaceConfig
from .models import Action, ActionResult, WorkspaceSession
from .port_allocator import PortAllocator
from .preview import PreviewOrchestrator, ReadinessProbe
from .process_handle import ProcessLauncher

logger = logging.getLogger(__name__)


class WorkspaceEngine:
    """Owns one port allocator, preview orchestrator, version store and gate.

    Nothing here is module-global: every collaborator is constructed
    from the config (or injected) and torn down by ``shutdown()``.
    """

    def __init__(
        self,
        config: WorkspaceConfig | None = None,
        policy: PolicyRuleSet | None = None,
        *,
        launcher: ProcessLauncher | None = None,
        probe: ReadinessProbe | None = None,
    ) -> None:
        self.config = config or WorkspaceConfig()
        self.ports = PortAllocator(self.config.base_port, self.config.max_port)
        self.previews = PreviewOrchestrator(
            self.ports, self.config, launcher=launcher, probe=probe,
        )
        self.versions = VersionStore(self.config.versions_dir, self.config.max_versions)
        self.policy = PolicyGuard(policy or PolicyRuleSet())
        self.executor = ActionExecutor(
            self.policy, self.previews, self.versions, self.config,
        )
        logger.info(
            "Workspace engine ready: ports from %d, versions in %s (max %d)",
            self.config.base_port, self.versions.root, self.versions.max_versions,
        )

    async def __aenter__(self) -> WorkspaceEngine:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    async def execute(
        self,
        session: WorkspaceSession,
        actions: list[Action | dict[str, Any]],
    ) -> list[ActionResult]:
        """Run actions with a guard that also honors the session's workspace rules."""
        guard = PolicyGuard.for_workspace(session.working_directory, self.policy.rules)
        if guard.rules is self.policy.rules:
            return await self.executor.execute(session, actions)
        executor = ActionExecutor(guard, self.previews, self.versions, self.config)
        return await executor.execute(session, actions)

    async def shutdown(self) -> None:
        outcomes = await self.previews.cleanup_all_previews()
        failed = [o.session_id for o in outcomes if not o.success]
        if failed:
            logger.warning("Previews not cleanly stopped: %s", ", ".join(failed))
        logger.info("Workspace engine shut down")
