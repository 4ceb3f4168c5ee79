from __future__ import annotations

import threading
import uuid

import structlog

from unblock.clock import Clock, SystemClock
from unblock.schemas import AgentRegistration, AgentRole, RegisterAgentRequest

log = structlog.get_logger(__name__)


class AgentRegistry:
    def __init__(self, *, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._agents: dict[str, AgentRegistration] = {}

    def register(self, req: RegisterAgentRequest, *, agent_id: str | None = None) -> AgentRegistration:
        agent = AgentRegistration(
            agent_id=agent_id or str(uuid.uuid4()),
            name=req.name,
            role=req.role,
            payout_address=req.payout_address,
            registered_at_ms=self._clock.now_ms(),
        )
        with self._lock:
            if agent.agent_id in self._agents:
                raise ValueError(f"agent already registered: {agent.agent_id}")
            self._agents[agent.agent_id] = agent
        log.info("agent_registered", agent_id=agent.agent_id, name=agent.name, role=agent.role.value)
        return agent.model_copy()

    def get(self, agent_id: str) -> AgentRegistration | None:
        with self._lock:
            agent = self._agents.get(agent_id)
            return None if agent is None else agent.model_copy()

    def list(self) -> list[AgentRegistration]:
        with self._lock:
            return [a.model_copy() for a in self._agents.values()]

    def list_by_role(self, role: AgentRole) -> list[AgentRegistration]:
        return [a for a in self.list() if a.role == role]

    def deactivate(self, agent_id: str) -> None:
        with self._lock:
            agent = self._agents.get(agent_id)
            if agent is not None:
                agent.active = False

    def payout_address(self, agent_id: str) -> str:
        """Registered payout address, or the agent id itself when unregistered."""
        agent = self.get(agent_id)
        return agent.payout_address if agent is not None else agent_id
