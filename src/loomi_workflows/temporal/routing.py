"""
Task-queue router.

Maps a tenant's subscription tier to one of three concurrency lanes:
- shared (free/starter): low concurrency, shared by all small tenants
- priority (growth/business): higher concurrency
- enterprise: a dedicated queue per allow-listed tenant

An enterprise tenant missing from the allow-list has no worker polling its
dedicated queue, so it is routed to the priority lane instead.
"""

from dataclasses import dataclass
from enum import Enum
from importlib import resources
from typing import Any, Dict, Iterable, List, Mapping, Optional

import yaml

from ..models import TenantContext, TenantLimits, TenantTier


class Lane(str, Enum):
    SHARED = "shared"
    PRIORITY = "priority"
    ENTERPRISE = "enterprise"


@dataclass(frozen=True)
class LaneSpec:
    """A task queue and the concurrency ceiling of the worker serving it."""
    lane: Lane
    task_queue: str
    max_concurrent: int


@dataclass(frozen=True)
class LaneConfig:
    lanes: Mapping[Lane, LaneSpec]
    tier_lanes: Mapping[TenantTier, Lane]
    tier_limits: Mapping[TenantTier, TenantLimits]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LaneConfig":
        lanes = {}
        for name, entry in data["lanes"].items():
            lane = Lane(name)
            lanes[lane] = LaneSpec(
                lane=lane,
                task_queue=entry["task_queue"],
                max_concurrent=int(entry["max_concurrent"]),
            )

        tier_lanes = {}
        tier_limits = {}
        for name, entry in data["tiers"].items():
            tier = TenantTier(name)
            tier_lanes[tier] = Lane(entry["lane"])
            tier_limits[tier] = TenantLimits(
                max_follow_ups_per_lead=int(entry.get("max_follow_ups_per_lead", -1)),
            )

        missing = set(TenantTier) - set(tier_lanes)
        if missing:
            raise ValueError(f"lanes config has no entry for tiers: {sorted(t.value for t in missing)}")

        return cls(lanes=lanes, tier_lanes=tier_lanes, tier_limits=tier_limits)

    @classmethod
    def load(cls, path: Optional[str] = None) -> "LaneConfig":
        """Load from a YAML file, or the packaged lanes.yaml."""
        if path:
            with open(path, "r", encoding="utf-8") as f:
                return cls.from_dict(yaml.safe_load(f))
        text = resources.files(__package__).joinpath("lanes.yaml").read_text(encoding="utf-8")
        return cls.from_dict(yaml.safe_load(text))


class TaskQueueRouter:
    """Resolves the task queue for a tenant and lists the lanes workers must serve."""

    def __init__(
        self,
        enterprise_tenant_ids: Iterable[str] = (),
        config: Optional[LaneConfig] = None,
    ):
        self.config = config or LaneConfig.load()
        self.enterprise_tenant_ids = frozenset(t for t in enterprise_tenant_ids if t)

    def lane_for(self, tenant_id: str, tier: TenantTier) -> Lane:
        lane = self.config.tier_lanes[tier]
        if lane is Lane.ENTERPRISE and tenant_id not in self.enterprise_tenant_ids:
            return Lane.PRIORITY
        return lane

    def task_queue_for(self, tenant_id: str, tier: TenantTier) -> str:
        lane = self.lane_for(tenant_id, tier)
        lane_spec = self.config.lanes[lane]
        if lane is Lane.ENTERPRISE:
            return lane_spec.task_queue.format(tenant_id=tenant_id)
        return lane_spec.task_queue

    def task_queue_for_tenant(self, tenant: TenantContext) -> str:
        return self.task_queue_for(tenant.tenant_id, tenant.tier)

    def limits_for(self, tier: TenantTier) -> TenantLimits:
        return self.config.tier_limits[tier]

    def build_tenant_context(self, tenant_id: str, tier: TenantTier = TenantTier.STARTER) -> TenantContext:
        """TenantContext with the configured limits of its tier."""
        return TenantContext(tenant_id=tenant_id, tier=tier, limits=self.limits_for(tier))

    def worker_lanes(self) -> List[LaneSpec]:
        """Every queue a worker process must poll, with its concurrency cap."""
        shared = self.config.lanes[Lane.SHARED]
        priority = self.config.lanes[Lane.PRIORITY]
        enterprise = self.config.lanes[Lane.ENTERPRISE]

        specs = [shared, priority]
        for tenant_id in sorted(self.enterprise_tenant_ids):
            specs.append(
                LaneSpec(
                    lane=Lane.ENTERPRISE,
                    task_queue=enterprise.task_queue.format(tenant_id=tenant_id),
                    max_concurrent=enterprise.max_concurrent,
                )
            )
        return specs
