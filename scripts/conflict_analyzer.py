"""Measure how often blind writes leave concurrent siblings as primaries become unreachable."""
from __future__ import annotations

import asyncio
import json
import random
import sys
import time
from pathlib import Path
from typing import Dict, List

import matplotlib.pyplot as plt
import pandas as pd

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT))

from causal_kv.app.coordinator import Coordinator  # noqa: E402
from causal_kv.app.partitioner import ConsistentHashRing  # noqa: E402
from causal_kv.app.store import ReplicaStore  # noqa: E402
from causal_kv.app.transport import LocalReplica  # noqa: E402

ARTIFACT_DIR = PROJECT_ROOT / "artifacts"
ARTIFACT_DIR.mkdir(exist_ok=True)

NODES = ["blue", "green", "black", "red", "pink"]
REPLICATION_FACTOR = 3
TOTAL_WRITES = 500
CONCURRENCY = 10
KEYS = [f"conflict-key-{i}" for i in range(20)]
OUTAGE_PROBABILITIES = [0.0, 0.1, 0.2, 0.3, 0.5]


def build_cluster() -> tuple:
    replicas: Dict[str, LocalReplica] = {n: LocalReplica(ReplicaStore(n)) for n in NODES}
    ring = ConsistentHashRing(NODES, replication_factor=REPLICATION_FACTOR)
    return Coordinator(ring, replicas), replicas, ring


async def perform_writes(outage: float, seed: int = 11) -> dict:
    """Read-modify-write workload where the key's primary is sometimes unreachable."""
    rng = random.Random(seed)
    coordinator, replicas, ring = build_cluster()
    sem = asyncio.Semaphore(CONCURRENCY)
    latencies: List[float] = []
    failed = 0

    async def worker(key: str, value: str) -> None:
        nonlocal failed
        async with sem:
            primary = ring.find_replicas(key)[0]
            replicas[primary].available = rng.random() >= outage
            start = time.perf_counter()
            current = await coordinator.get_values(key)
            known = next(iter(current)).version if len(current) == 1 else None
            result = await coordinator.put(key, value, known)
            latencies.append((time.perf_counter() - start) * 1000)
            replicas[primary].available = True
            if not result.ok:
                failed += 1

    tasks = [
        asyncio.create_task(worker(rng.choice(KEYS), f"v-{i}-{time.time_ns()}"))
        for i in range(TOTAL_WRITES)
    ]
    await asyncio.gather(*tasks)

    conflicted = 0
    siblings = 0
    for key in KEYS:
        values = await coordinator.get_values(key)
        siblings += len(values)
        if len(values) > 1:
            conflicted += 1

    return {
        "outage_probability": outage,
        "writes": len(latencies),
        "failed_writes": failed,
        "conflicted_keys": conflicted,
        "avg_siblings": siblings / len(KEYS),
        "avg_latency_ms": sum(latencies) / len(latencies),
    }


def main() -> None:
    results = []
    for outage in OUTAGE_PROBABILITIES:
        print(f"Running workload with primary outage probability={outage}")
        results.append(asyncio.run(perform_writes(outage)))

    df = pd.DataFrame(results)
    print(df.to_string(index=False))
    plt.figure(figsize=(8, 4))
    plt.plot(df["outage_probability"], df["conflicted_keys"], marker="o", label="conflicted keys")
    plt.plot(df["outage_probability"], df["avg_siblings"], marker="s", label="avg siblings per key")
    plt.title("Primary Outage vs Retained Conflicts")
    plt.xlabel("Probability primary is unreachable")
    plt.ylabel("Count")
    plt.legend()
    plt.grid(True, linestyle="--", alpha=0.4)
    plot_path = ARTIFACT_DIR / "outage_conflicts.png"
    plt.savefig(plot_path, bbox_inches="tight")
    summary = {
        "total_writes_per_run": TOTAL_WRITES,
        "concurrency": CONCURRENCY,
        "key_count": len(KEYS),
        "nodes": NODES,
        "replication_factor": REPLICATION_FACTOR,
        "results": results,
    }
    summary_path = ARTIFACT_DIR / "conflict_summary.json"
    summary_path.write_text(json.dumps(summary, indent=2))
    print(f"Saved conflict plot to {plot_path}")
    print(f"Saved JSON summary to {summary_path}")


if __name__ == "__main__":
    main()
