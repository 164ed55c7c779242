from typing import Dict

import requests
from prometheus_client.parser import text_string_to_metric_families


def parse_metrics(url="http://localhost:8000/metrics", timeout=5.0):
    resp = requests.get(url, timeout=timeout)
    resp.raise_for_status()
    metrics: Dict[str, float] = {}

    for family in text_string_to_metric_families(resp.text):
        for sample in family.samples:
            # метки склеиваем в ключ: name{k=v,...}
            key = sample.name
            if sample.labels:
                labels = ",".join(f"{k}={v}" for k, v in sorted(sample.labels.items()))
                key = f"{key}{{{labels}}}"
            metrics[key] = float(sample.value)
    return metrics


def _sum(metrics, name):
    return sum(v for k, v in metrics.items() if k == name or k.startswith(name + "{"))


def get_stats(metrics):
    stats = {}

    # задержка запроса
    lat_sum = _sum(metrics, "rag_router_query_seconds_sum")
    lat_count = _sum(metrics, "rag_router_query_seconds_count")
    stats["queries"] = lat_count
    stats["avg_query_latency"] = lat_sum / lat_count if lat_count else 0.0

    # исходы запросов
    for outcome in ("answered", "no_documents", "not_ready", "failed"):
        stats[f"outcome_{outcome}"] = metrics.get(f"rag_router_query_outcomes_total{{outcome={outcome}}}", 0)

    # кэш временных индексов
    hits = metrics.get("rag_router_scoped_cache_lookups_total{result=hit}", 0)
    lookups = _sum(metrics, "rag_router_scoped_cache_lookups_total")
    stats["scoped_cache_hit_ratio"] = hits / lookups if lookups else 0.0

    # созданные индексы
    stats["index_creations"] = _sum(metrics, "rag_router_index_creations_total")

    # синхронизация мастер-индекса
    stats["master_sync_failures"] = sum(
        v for k, v in metrics.items()
        if k.startswith("rag_router_master_sync_files_total{") and "result=error" in k
    )

    return stats


if __name__ == "__main__":
    metrics = parse_metrics()
    stats = get_stats(metrics)
    print("📊 RAG Router Monitoring:")
    for k, v in stats.items():
        print(f"{k}: {v}")
