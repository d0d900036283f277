import argparse
import asyncio
import time

from generators.scenarios import load_scenarios
from realtime.alerting import AlertConfig
from realtime.engine import EngineConfig, SimulationEngine
from realtime.logs import setup_logging
from realtime.metrics import merge_stats
from realtime.pipeline import MonitoringPipeline
from realtime.report import RunReporter
from realtime.sinks import FanoutSink, JsonlAlertSink, StreamSink
from realtime.stream import EventStream


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one scenario for a crew of firefighters in parallel.")
    parser.add_argument("--scenario", type=str, default="multi_hazard_extreme")
    parser.add_argument("--subjects", type=int, default=10, help="Number of firefighters.")
    parser.add_argument("--speed", type=float, default=120.0)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--cooldown", type=float, default=0.0, help="Seconds before a resolved alert type may re-open.")
    parser.add_argument("--stale-after", type=float, default=600.0, help="Simulated seconds of silence before COMMUNICATION_LOST.")
    parser.add_argument("--scenarios", type=str, default=None)
    parser.add_argument("--report", type=str, default="data/run_report.json")
    parser.add_argument("--alert-log", type=str, default="data/alert_events.jsonl")
    parser.add_argument("--log-level", type=str, default="WARNING")
    parser.add_argument("--log-file", type=str, default=None)
    return parser.parse_args()


async def main(args: argparse.Namespace):
    setup_logging(args.log_level, args.log_file)
    stream = EventStream(maxsize=20000)

    # -------------------------
    # CORE (shared pipeline, per-subject alert state + JSONL logging)
    # -------------------------
    catalog = load_scenarios(args.scenarios)
    pipeline = MonitoringPipeline(
        alert_cfg=AlertConfig(resolve_after_ticks=3, cooldown_sec=args.cooldown, stale_after_sec=args.stale_after),
        sink=FanoutSink([StreamSink(stream, include_samples=False), JsonlAlertSink(args.alert_log)]),
    )
    engine = SimulationEngine(
        catalog,
        pipeline=pipeline,
        config=EngineConfig(tick_interval_sec=10.0, speed=args.speed, seed=args.seed),
    )
    reporter = RunReporter(args.report)

    subject_ids = [f"FF-{i + 1:03d}" for i in range(args.subjects)]
    result = engine.start_many(subject_ids, args.scenario)
    print(
        f"[START] scenario={args.scenario} requested={result['summary']['requested']} "
        f"started={result['summary']['started']} failed={result['summary']['failed']}"
    )
    for err in result["errors"]:
        print(f"  [ERROR] {err['subject_id']}: {err['reason']} - {err['message']}")
    instances = [engine.instance(s["subject_id"]) for s in result["started"]]

    async def consumer():
        last_print = time.time()
        while True:
            record = await stream.consume()
            ev = record["event"]
            a = ev["alert"]
            print(f"[ALERT {ev['kind'].upper()}] {a['subject_id']} {a['type']} {a['severity']} | {a['message']}")

            now = time.time()
            if now - last_print >= 2.0:
                lat = merge_stats(inst.latency for inst in instances) or {"avg_ms": 0.0, "p95_ms": 0.0}
                st = pipeline.stats
                print(
                    f"[SUMMARY] active={len(engine.list_active())} "
                    f"in={st['in']} dropped={st['dropped']} late={st['late']} corrected={st['corrected_fields']} | "
                    f"candidates={st['candidates']} alerts={st['alerts_emitted']} sink_errors={st['sink_errors']} | "
                    f"tick_avg={lat['avg_ms']:.2f}ms p95={lat['p95_ms']:.2f}ms"
                )
                last_print = now

    async def watchdog():
        # simulated clock: the furthest any running subject has got
        while True:
            await asyncio.sleep(1.0)
            if instances:
                pipeline.check_stale(max(inst.now for inst in instances))

    consumer_task = asyncio.create_task(consumer())
    watchdog_task = asyncio.create_task(watchdog())

    try:
        await engine.drain()
    except (asyncio.CancelledError, KeyboardInterrupt):
        pass
    finally:
        engine.stop_all()
        consumer_task.cancel()
        watchdog_task.cancel()
        await asyncio.gather(consumer_task, watchdog_task, return_exceptions=True)

        # Always save final report
        report = reporter.build(
            subjects=len(instances),
            scenario_id=args.scenario,
            pipeline_stats=pipeline.stats,
            alert_stats=pipeline.lifecycle.stats,
            tick_stats=merge_stats(inst.latency for inst in instances),
            active_alerts=[a.to_dict() for a in pipeline.active_alerts()],
        )
        reporter.save(report)

        print(f"[REPORT] Saved final report to {args.report}")
        print(f"[REPORT] Alert events are in {args.alert_log}")


if __name__ == "__main__":
    try:
        asyncio.run(main(parse_args()))
    except KeyboardInterrupt:
        pass
