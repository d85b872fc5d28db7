"""Positions, agent pools, and teams: the organizational graph agents fill."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from ..errors import HierarchyError, NotFound
from .agents import AgentRegistry
from .presets import SupportsPresetApply, SupportsPresetExport

logger = logging.getLogger("council.hierarchy")

PUBLISHER_ID = "publisher"


class Tier(str, Enum):
    EXECUTIVE = "executive"
    LEADER = "leader"
    MEMBER = "member"


class SelectionMode(str, Enum):
    RANDOM = "random"
    ROUND_ROBIN = "round_robin"
    WEIGHTED = "weighted"


@dataclass
class Position:
    """A named role, filled by exactly one agent or one pool."""

    id: str
    name: str
    tier: Tier = Tier.MEMBER
    team_id: Optional[str] = None
    assigned_agent_id: Optional[str] = None
    assigned_pool_id: Optional[str] = None
    role_description: str = ""
    is_mandatory: bool = False

    @property
    def is_filled(self) -> bool:
        return bool(self.assigned_agent_id) != bool(self.assigned_pool_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "tier": self.tier.value,
            "team_id": self.team_id,
            "assigned_agent_id": self.assigned_agent_id,
            "assigned_pool_id": self.assigned_pool_id,
            "role_description": self.role_description,
            "is_mandatory": self.is_mandatory,
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "Position":
        if not data.get("id"):
            raise HierarchyError("Position ID is required")
        if data.get("assigned_agent_id") and data.get("assigned_pool_id"):
            raise HierarchyError(
                f"Position '{data['id']}' cannot have both an agent and a pool assigned"
            )
        return Position(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            tier=Tier(data.get("tier", Tier.MEMBER.value)),
            team_id=data.get("team_id"),
            assigned_agent_id=data.get("assigned_agent_id"),
            assigned_pool_id=data.get("assigned_pool_id"),
            role_description=str(data.get("role_description", "")),
            is_mandatory=bool(data.get("is_mandatory", False)),
        )


@dataclass
class AgentPool:
    id: str
    name: str
    agent_ids: List[str]
    selection_mode: SelectionMode = SelectionMode.RANDOM
    weights: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "agent_ids": list(self.agent_ids),
            "selection_mode": self.selection_mode.value,
            "weights": dict(self.weights),
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "AgentPool":
        if not data.get("id"):
            raise HierarchyError("Pool ID is required")
        agent_ids = list(data.get("agent_ids") or [])
        if not agent_ids:
            raise HierarchyError(f"Pool '{data['id']}' must have at least one agent")
        weights = {str(k): float(v) for k, v in (data.get("weights") or {}).items()}
        if any(w < 0 for w in weights.values()):
            raise HierarchyError(f"Pool '{data['id']}' has a negative weight")
        return AgentPool(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            agent_ids=agent_ids,
            selection_mode=SelectionMode(data.get("selection_mode", SelectionMode.RANDOM.value)),
            weights=weights,
        )


@dataclass
class Team:
    id: str
    name: str
    leader_position_id: Optional[str] = None
    member_position_ids: List[str] = field(default_factory=list)

    def position_ids(self) -> List[str]:
        """Leader first, then members in order, without duplicates."""
        ordered: List[str] = []
        if self.leader_position_id:
            ordered.append(self.leader_position_id)
        for pid in self.member_position_ids:
            if pid not in ordered:
                ordered.append(pid)
        return ordered

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "leader_position_id": self.leader_position_id,
            "member_position_ids": list(self.member_position_ids),
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "Team":
        if not data.get("id"):
            raise HierarchyError("Team ID is required")
        return Team(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            leader_position_id=data.get("leader_position_id"),
            member_position_ids=list(data.get("member_position_ids") or []),
        )


class Hierarchy(SupportsPresetExport, SupportsPresetApply):
    """Maps positions to agents or pools and groups positions into teams."""

    preset_key = "hierarchy"

    def __init__(self, registry: AgentRegistry, company_name: str = "The Council") -> None:
        self.registry = registry
        self.company_name = company_name
        self.positions: Dict[str, Position] = {}
        self.pools: Dict[str, AgentPool] = {}
        self.teams: Dict[str, Team] = {}
        registry.reference_check = self._agent_references
        self._setup_mandatory_positions()

    def _setup_mandatory_positions(self) -> None:
        if PUBLISHER_ID in self.positions:
            return
        self.positions[PUBLISHER_ID] = Position(
            id=PUBLISHER_ID,
            name="Publisher",
            tier=Tier.EXECUTIVE,
            is_mandatory=True,
            role_description=(
                "The Publisher oversees the entire creative operation, ensuring the final "
                "output meets quality standards and aligns with the user's vision."
            ),
        )

    # ------------------------------------------------------------------ #
    # Positions
    # ------------------------------------------------------------------ #
    def create_position(self, data: Mapping[str, Any] | Position) -> Position:
        position = data if isinstance(data, Position) else Position.from_dict(data)
        if position.id in self.positions:
            raise HierarchyError(f"Position '{position.id}' already exists")
        self._check_assignment_targets(position)
        if position.team_id:
            team = self.require_team(position.team_id)
            if position.id not in team.member_position_ids:
                team.member_position_ids.append(position.id)
        self.positions[position.id] = position
        return position

    def get_position(self, position_id: str) -> Optional[Position]:
        return self.positions.get(position_id)

    def require_position(self, position_id: str) -> Position:
        position = self.positions.get(position_id)
        if position is None:
            raise NotFound(f"Position '{position_id}' not found")
        return position

    def executive_positions(self) -> List[Position]:
        return [p for p in self.positions.values() if p.tier == Tier.EXECUTIVE]

    def team_positions(self, team_id: str) -> List[Position]:
        team = self.require_team(team_id)
        return [self.positions[pid] for pid in team.position_ids() if pid in self.positions]

    def update_position(self, position_id: str, updates: Mapping[str, Any]) -> Position:
        position = self.require_position(position_id)
        if "name" in updates:
            position.name = str(updates["name"])
        if "role_description" in updates:
            position.role_description = str(updates["role_description"])
        if "tier" in updates:
            if position.is_mandatory and Tier(updates["tier"]) != position.tier:
                raise HierarchyError(f"Cannot change the tier of mandatory position '{position_id}'")
            position.tier = Tier(updates["tier"])
        return position

    def delete_position(self, position_id: str) -> bool:
        position = self.positions.get(position_id)
        if position is None:
            return False
        if position.is_mandatory:
            raise HierarchyError(f"Position '{position_id}' is mandatory and cannot be deleted")
        for team in self.teams.values():
            if position_id in team.member_position_ids:
                team.member_position_ids.remove(position_id)
            if team.leader_position_id == position_id:
                team.leader_position_id = None
        del self.positions[position_id]
        return True

    def assign_agent(self, position_id: str, agent_id: str) -> Position:
        """Fill a position with a fixed agent, clearing any pool assignment."""
        position = self.require_position(position_id)
        self.registry.require(agent_id)
        position.assigned_agent_id = agent_id
        position.assigned_pool_id = None
        return position

    def assign_pool(self, position_id: str, pool_id: str) -> Position:
        """Fill a position with a rotating pool, clearing any agent assignment."""
        position = self.require_position(position_id)
        self.require_pool(pool_id)
        position.assigned_pool_id = pool_id
        position.assigned_agent_id = None
        return position

    def unassign(self, position_id: str) -> Position:
        position = self.require_position(position_id)
        position.assigned_agent_id = None
        position.assigned_pool_id = None
        return position

    def unfilled_positions(self) -> List[Position]:
        return [p for p in self.positions.values() if not p.is_filled]

    # ------------------------------------------------------------------ #
    # Pools
    # ------------------------------------------------------------------ #
    def create_pool(self, data: Mapping[str, Any] | AgentPool) -> AgentPool:
        pool = data if isinstance(data, AgentPool) else AgentPool.from_dict(data)
        if pool.id in self.pools:
            raise HierarchyError(f"Pool '{pool.id}' already exists")
        for agent_id in pool.agent_ids:
            self.registry.require(agent_id)
        self.pools[pool.id] = pool
        return pool

    def get_pool(self, pool_id: str) -> Optional[AgentPool]:
        return self.pools.get(pool_id)

    def require_pool(self, pool_id: str) -> AgentPool:
        pool = self.pools.get(pool_id)
        if pool is None:
            raise NotFound(f"Pool '{pool_id}' not found")
        return pool

    def delete_pool(self, pool_id: str) -> bool:
        if pool_id not in self.pools:
            return False
        users = [p.id for p in self.positions.values() if p.assigned_pool_id == pool_id]
        if users:
            raise HierarchyError(f"Pool '{pool_id}' is assigned to: {', '.join(users)}")
        del self.pools[pool_id]
        return True

    # ------------------------------------------------------------------ #
    # Teams
    # ------------------------------------------------------------------ #
    def create_team(self, data: Mapping[str, Any] | Team) -> Team:
        team = data if isinstance(data, Team) else Team.from_dict(data)
        if team.id in self.teams:
            raise HierarchyError(f"Team '{team.id}' already exists")
        members = [self.require_position(pid) for pid in team.member_position_ids]
        if team.leader_position_id:
            leader = self.require_position(team.leader_position_id)
            if leader.team_id not in (None, team.id) and leader.id not in team.member_position_ids:
                raise HierarchyError(f"Position '{leader.id}' belongs to team '{leader.team_id}'")
        for position in members:
            position.team_id = team.id
        self.teams[team.id] = team
        if team.leader_position_id:
            self.set_team_leader(team.id, team.leader_position_id)
        return team

    def get_team(self, team_id: str) -> Optional[Team]:
        return self.teams.get(team_id)

    def require_team(self, team_id: str) -> Team:
        team = self.teams.get(team_id)
        if team is None:
            raise NotFound(f"Team '{team_id}' not found")
        return team

    def add_member(self, team_id: str, position_id: str) -> Team:
        team = self.require_team(team_id)
        position = self.require_position(position_id)
        if position.team_id and position.team_id != team_id:
            self.remove_member(position.team_id, position_id)
        if position_id not in team.member_position_ids:
            team.member_position_ids.append(position_id)
        position.team_id = team_id
        return team

    def remove_member(self, team_id: str, position_id: str) -> Team:
        team = self.require_team(team_id)
        if position_id in team.member_position_ids:
            team.member_position_ids.remove(position_id)
        if team.leader_position_id == position_id:
            team.leader_position_id = None
        position = self.positions.get(position_id)
        if position and position.team_id == team_id:
            position.team_id = None
        return team

    def set_team_leader(self, team_id: str, position_id: str) -> Team:
        """Make ``position_id`` the leader, elevating it into the team if needed."""
        team = self.require_team(team_id)
        position = self.require_position(position_id)
        if position_id not in team.member_position_ids:
            if position.team_id and position.team_id != team_id:
                raise HierarchyError(
                    f"Position '{position_id}' belongs to team '{position.team_id}'"
                )
            team.member_position_ids.insert(0, position_id)
        position.team_id = team_id
        if position.tier == Tier.MEMBER:
            position.tier = Tier.LEADER
        team.leader_position_id = position_id
        return team

    def delete_team(self, team_id: str, delete_positions: bool = False) -> bool:
        team = self.teams.get(team_id)
        if team is None:
            return False
        for pid in team.position_ids():
            position = self.positions.get(pid)
            if position is None:
                continue
            if delete_positions and not position.is_mandatory:
                del self.positions[pid]
            else:
                position.team_id = None
        del self.teams[team_id]
        return True

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #
    def _check_assignment_targets(self, position: Position) -> None:
        if position.assigned_agent_id:
            self.registry.require(position.assigned_agent_id)
        if position.assigned_pool_id:
            self.require_pool(position.assigned_pool_id)

    def _agent_references(self, agent_id: str) -> List[str]:
        refs = [f"position:{p.id}" for p in self.positions.values() if p.assigned_agent_id == agent_id]
        refs.extend(f"pool:{pool.id}" for pool in self.pools.values() if agent_id in pool.agent_ids)
        return refs

    def get_summary(self) -> Dict[str, Any]:
        return {
            "company_name": self.company_name,
            "positions": len(self.positions),
            "filled": sum(1 for p in self.positions.values() if p.is_filled),
            "pools": len(self.pools),
            "teams": len(self.teams),
        }

    # ------------------------------------------------------------------ #
    # Preset capability
    # ------------------------------------------------------------------ #
    def export_preset(self) -> Dict[str, Any]:
        return {
            "company_name": self.company_name,
            "pools": [pool.to_dict() for pool in self.pools.values()],
            "positions": [position.to_dict() for position in self.positions.values()],
            "teams": [team.to_dict() for team in self.teams.values()],
        }

    def apply_preset(self, data: Mapping[str, Any], merge: bool = False) -> None:
        """Import pools, teams, then positions; agents must already be registered.

        A section that fails to apply leaves the hierarchy as it was.
        """
        backup = copy.deepcopy((self.company_name, self.positions, self.pools, self.teams))
        try:
            self._apply_sections(data, merge)
        except Exception:
            self.company_name, self.positions, self.pools, self.teams = backup
            raise
        logger.debug("Hierarchy applied: %s", self.get_summary())

    def _apply_sections(self, data: Mapping[str, Any], merge: bool) -> None:
        if not merge:
            self.positions.clear()
            self.pools.clear()
            self.teams.clear()
        if data.get("company_name"):
            self.company_name = str(data["company_name"])

        for raw in data.get("pools", []):
            if merge and raw.get("id") in self.pools:
                continue
            self.create_pool(raw)

        raw_teams = [Team.from_dict(raw) for raw in data.get("teams", [])]
        for team in raw_teams:
            if merge and team.id in self.teams:
                continue
            self.teams[team.id] = Team(id=team.id, name=team.name)

        for raw in data.get("positions", []):
            if merge and raw.get("id") in self.positions:
                continue
            position = Position.from_dict(raw)
            self._check_assignment_targets(position)
            self.positions[position.id] = position

        for team in raw_teams:
            target = self.teams[team.id]
            for pid in team.member_position_ids:
                if pid in self.positions and pid not in target.member_position_ids:
                    target.member_position_ids.append(pid)
                    self.positions[pid].team_id = team.id
            if team.leader_position_id:
                self.set_team_leader(team.id, team.leader_position_id)

        self._setup_mandatory_positions()
