import pathlib

import matplotlib
matplotlib.use("Agg")  # headless-safe
import matplotlib.pyplot as plt

from .aggregate import read_summary

PERCENTILES = (("p50", "-o"), ("p95", "--s"), ("p99", ":^"))


def render_summary(summary_path, out_path):
    """Plot latency percentiles against concurrency from a summary file."""
    summary = read_summary(summary_path)
    levels = summary["concurrency_level"]

    plt.figure()
    for column, style in PERCENTILES:
        plt.plot(levels, summary[column] * 1000.0, style, label=column)
    plt.xscale("log", base=2)
    plt.xticks(levels, [str(n) for n in levels])
    plt.xlabel("Concurrent clients")
    plt.ylabel("Round-trip latency (ms)")
    plt.title("Blind Schnorr issuance latency vs concurrency")
    plt.legend()
    plt.grid(True, which="both", linestyle=":")
    plt.tight_layout()

    out_path = pathlib.Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(out_path, dpi=160)
    plt.close()
    return out_path
