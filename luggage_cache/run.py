"""Entry point that wires Hydra configuration to cache management actions."""

import sys
from pathlib import Path
from typing import List

# Ensure the project root is on the import path when executed as a script.
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import hydra
from omegaconf import DictConfig, OmegaConf
from tqdm import tqdm

from luggage_cache.cache.models import CacheCategory, format_bytes
from luggage_cache.context import AppContext
from luggage_cache.webui.server import start_server

ACTIONS = ("stats", "clear_expired", "clear_all", "clear_category", "warm", "serve")


def read_item_names(cfg: DictConfig) -> List[str]:
    """Collect item names from ``cfg.items`` and the optional ``cfg.items_file`` (one per line)."""
    names = [str(name).strip() for name in (cfg.get("items") or []) if str(name).strip()]
    items_file = cfg.get("items_file")
    if items_file:
        try:
            with open(items_file, "r", encoding="utf-8") as handle:
                names.extend(line.strip() for line in handle if line.strip())
        except OSError as exc:
            print(f"❌ Error while reading items file '{items_file}': {exc}")
            sys.exit(1)
    return names


def print_statistics(context: AppContext) -> None:
    stats = context.store.statistics()
    print("\n📦 Cache statistics:")
    print(f"   Entries: {stats.total_entries}")
    print(f"   Size:    {stats.formatted_size} / {stats.formatted_max_size} ({stats.usage_percentage:.1f}%)")
    for name, count in sorted(stats.category_counts.items()):
        print(f"   - {CacheCategory(name).display_name}: {count}")
    print(
        f"   Maintenance: {stats.evictions} evicted, {stats.expired_removed} expired removed, "
        f"{format_bytes(stats.freed_bytes)} freed in {stats.cleanup_runs} sweeps"
    )

    report = context.monitor.report()
    print("\n📊 Performance report:")
    print(f"   Requests:       {report.total_requests}")
    print(f"   Success rate:   {report.overall_success_rate * 100:.1f}%")
    print(f"   Cache hit rate: {report.cache_hit_rate * 100:.1f}%")
    print(f"   Avg response:   {report.average_response_time:.0f}ms (p95 {report.p95_response_time:.0f}ms)")

    warnings = context.monitor.warnings()
    if warnings:
        print("\n⚠️ Warnings:")
        for warning in warnings:
            print(f"   [{warning.severity.value}] {warning.message}")


def warm_cache(context: AppContext, names: List[str], chunk_size: int) -> None:
    if not names:
        print("❌ Error: no items to warm. Pass items=[...] or items_file=<path>.")
        sys.exit(1)
    placeholders = 0
    chunks = [names[start:start + chunk_size] for start in range(0, len(names), chunk_size)]
    for chunk in tqdm(chunks, desc="Identifying items", unit="batch"):
        for item in context.assistant.identify_items_batch(chunk):
            if item.source == "default":
                placeholders += 1
    print(f"✅ Identified {len(names) - placeholders}/{len(names)} items ({placeholders} placeholders).")


@hydra.main(config_path="../configs", config_name="config", version_base=None)
def main(cfg: DictConfig) -> None:
    """Hydra-driven execution entry point for the AI cache."""
    action = str(cfg.get("action", "stats"))
    if action not in ACTIONS:
        print(f"❌ Error: unknown action '{action}'. Expected one of: {', '.join(ACTIONS)}")
        sys.exit(1)

    print("\n" + "=" * 70)
    print("🧳 LUGGAGE ASSISTANT – AI RESPONSE CACHE")
    print("=" * 70)
    print("\n🔧 Configuration:")
    print(OmegaConf.to_yaml(cfg))

    context = AppContext.from_config(cfg, start_cleanup=action == "serve")
    try:
        if action == "stats":
            print_statistics(context)
        elif action == "clear_expired":
            print(f"🧹 Removed {context.store.clear_expired()} expired entries.")
        elif action == "clear_all":
            print(f"🧹 Removed {context.store.clear_all()} entries.")
        elif action == "clear_category":
            try:
                category = CacheCategory.parse(cfg.get("category"))
            except ValueError as exc:
                print(f"❌ Error: {exc}")
                sys.exit(1)
            print(f"🧹 Removed {context.store.clear_category(category)} entries from {category.display_name}.")
        elif action == "warm":
            warm_cache(context, read_item_names(cfg), cfg.coordinator.get("max_concurrent_requests", 3))
        elif action == "serve":
            try:
                start_server(int(cfg.server.port), context.store, context.monitor, host=str(cfg.server.host))
            except KeyboardInterrupt:
                print("\n⚠️ Server stopped by user")
    finally:
        context.close()


if __name__ == "__main__":
    main()
