#!/usr/bin/env python3
"""
Console watcher for the RPC latency exporter.
Scrapes /metrics and shows per-endpoint sample counts and average latency.
"""

import time
import requests
import sys
import signal

from prometheus_client.parser import text_string_to_metric_families

METRICS_URL = "http://localhost:9090/metrics"


def fetch_metrics(url=METRICS_URL):
    """Fetch raw exposition text from the exporter"""
    try:
        response = requests.get(url, timeout=3)
        response.raise_for_status()
        return response.text
    except requests.RequestException as e:
        print(f"Error fetching metrics: {e}")
        return None


def summarize_metrics(text):
    """Reduce the latency histogram to {(rpc_name, rpc_url): {count, sum, avg_seconds}}"""
    endpoints = {}
    latest_block = None

    for family in text_string_to_metric_families(text):
        if family.name == "ethereum_latest_block_number":
            for sample in family.samples:
                latest_block = int(sample.value)
        elif family.name == "ethereum_rpc_latency_seconds":
            for sample in family.samples:
                key = (sample.labels.get("rpc_name"), sample.labels.get("rpc_url"))
                entry = endpoints.setdefault(key, {"count": 0, "sum": 0.0})
                if sample.name.endswith("_count"):
                    entry["count"] = int(sample.value)
                elif sample.name.endswith("_sum"):
                    entry["sum"] = sample.value

    for entry in endpoints.values():
        entry["avg_seconds"] = entry["sum"] / entry["count"] if entry["count"] else None

    return endpoints, latest_block


def main():
    print("📡 RPC Latency Exporter Watch")
    print("=" * 60)
    print("Press Ctrl+C to stop")

    running = True

    def signal_handler(signum, frame):
        nonlocal running
        running = False
        print("\n👋 Watch stopped")

    signal.signal(signal.SIGINT, signal_handler)

    url = sys.argv[1] if len(sys.argv) > 1 else METRICS_URL
    iteration = 0
    while running:
        iteration += 1
        print(f"\n📊 Iteration {iteration} - {time.strftime('%H:%M:%S')}")

        text = fetch_metrics(url)
        if text is None:
            time.sleep(2)
            continue

        endpoints, latest_block = summarize_metrics(text)
        if not endpoints:
            print("⚠️  No latency samples yet (waiting for a new block)")
            time.sleep(2)
            continue

        print(f"Latest block: {latest_block}")
        for (name, url), entry in sorted(endpoints.items()):
            avg = entry["avg_seconds"]
            avg_ms = f"{avg * 1000:7.0f} ms" if avg is not None else "      n/a"
            print(f"  {name:20} {url:40} | Samples: {entry['count']:>6} | Avg: {avg_ms}")

        time.sleep(3)

    return 0


if __name__ == "__main__":
    sys.exit(main())
