import argparse
import logging
import sys

from .config import BenchConfig, configure_logging
from .errors import BlindSigError
from .loadgen import LoadGenerator
from .server import BlindSigServer

logger = logging.getLogger("blind_sig_bench")


def _levels(raw):
    return tuple(int(part) for part in raw.split(",") if part)


def build_parser():
    parser = argparse.ArgumentParser(prog="blind_sig_bench",
                                     description="Blind Schnorr issuance server and load generator.")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="run the issuance server in the foreground")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)
    serve.add_argument("--max-sessions", type=int)

    bench = sub.add_parser("bench", help="sweep concurrency levels and write a summary")
    bench.add_argument("--url", help="benchmark a running server instead of an embedded one")
    bench.add_argument("--levels", type=_levels)
    bench.add_argument("--requests", type=int, dest="requests_per_level")
    bench.add_argument("--duration", type=float, dest="duration_per_level")
    bench.add_argument("--interarrival", type=float, dest="interarrival_ms",
                       help="mean gap between round-trip starts in ms (Poisson arrivals)")
    bench.add_argument("--summary", dest="summary_path")
    bench.add_argument("--samples", dest="samples_path")
    bench.add_argument("--max-sessions", type=int)

    plot = sub.add_parser("plot", help="render a summary file")
    plot.add_argument("summary")
    plot.add_argument("output")
    return parser


def run_bench(config, url=None):
    server = None
    if url is None:
        server = BlindSigServer.from_config(config, port=0).start()
        url = server.url
    try:
        aggregator = LoadGenerator(url, config).sweep()
    finally:
        if server is not None:
            server.stop()
    summary = aggregator.write_summary(config.summary_path)
    samples = aggregator.write_samples(config.samples_path)
    print(aggregator.export().to_string(index=False))
    print(f"Wrote {summary}")
    print(f"Wrote {samples}")


def main(argv=None):
    args = build_parser().parse_args(argv)
    config = BenchConfig.from_env()
    configure_logging(config.log_level)

    try:
        if args.command == "serve":
            config = config.with_overrides(host=args.host, port=args.port,
                                           max_sessions=args.max_sessions)
            server = BlindSigServer.from_config(config)
            server.service.store.start_reaper(config.reap_interval)
            logger.info("[SERVER] listening on %s", server.url)
            try:
                server.serve_forever()
            except KeyboardInterrupt:
                pass
            finally:
                server.server_close()
                server.service.store.stop_reaper()
        elif args.command == "bench":
            config = config.with_overrides(
                concurrency_levels=args.levels,
                requests_per_level=args.requests_per_level,
                duration_per_level=args.duration_per_level,
                interarrival_ms=args.interarrival_ms,
                summary_path=args.summary_path,
                samples_path=args.samples_path,
                max_sessions=args.max_sessions,
            )
            run_bench(config, args.url)
        else:
            from .plot import render_summary
            print(f"Wrote {render_summary(args.summary, args.output)}")
    except BlindSigError as exc:
        logger.error("%s: %s", type(exc).__name__, exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
