from blind_sig_bench.aggregate import LatencySample, ResultAggregator
from blind_sig_bench.plot import render_summary


def test_render_summary(tmp_path):
    agg = ResultAggregator()
    for level in (1, 2, 4):
        for k in range(1, 11):
            agg.submit(LatencySample(level, 0.001 * level * k))
    summary = agg.write_summary(tmp_path / "summary.csv")
    png = render_summary(summary, tmp_path / "plots" / "latency.png")
    assert png.exists()
    assert png.read_bytes()[:8] == b"\x89PNG\r\n\x1a\n"
