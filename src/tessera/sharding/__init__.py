"""Shard planning, shard report exchange, and run report aggregation."""

from tessera.sharding.aggregator import merge_shard_reports
from tessera.sharding.planner import Shard, build_units, plan_shards, select_shard
from tessera.sharding.shard_report import read_shard_report, write_shard_report

__all__ = [
    "Shard",
    "build_units",
    "merge_shard_reports",
    "plan_shards",
    "read_shard_report",
    "select_shard",
    "write_shard_report",
]
