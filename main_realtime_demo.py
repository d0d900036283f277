import argparse
import asyncio

from generators.scenarios import load_scenarios
from realtime.alerting import AlertConfig
from realtime.engine import EngineConfig, SimulationEngine
from realtime.logs import setup_logging
from realtime.pipeline import MonitoringPipeline
from realtime.sinks import FanoutSink, JsonlAlertSink, StreamSink
from realtime.stream import EventStream
from realtime.thresholds import ThresholdTable


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one scenario for one firefighter and print the live stream.")
    parser.add_argument("--scenario", type=str, default="heat_exhaustion", help="Scenario id.")
    parser.add_argument("--subject", type=str, default="FF-001", help="Subject (firefighter) id.")
    parser.add_argument("--speed", type=float, default=60.0, help="Simulated seconds per wall second / tick interval.")
    parser.add_argument("--tick", type=float, default=10.0, help="Simulated seconds per tick.")
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--scenarios", type=str, default=None, help="Alternative scenarios JSON file.")
    parser.add_argument("--thresholds", type=str, default=None, help="Alternative thresholds JSON file.")
    parser.add_argument("--alert-log", type=str, default="data/alert_events.jsonl")
    parser.add_argument("--log-level", type=str, default="WARNING")
    return parser.parse_args()


async def main(args: argparse.Namespace):
    setup_logging(args.log_level)
    stream = EventStream(maxsize=5000)

    catalog = load_scenarios(args.scenarios)
    scenario = catalog.get_scenario(args.scenario)

    table = ThresholdTable.from_file(args.thresholds) if args.thresholds else ThresholdTable.default()
    pipeline = MonitoringPipeline(
        table=table,
        alert_cfg=AlertConfig(resolve_after_ticks=3),
        sink=FanoutSink([StreamSink(stream), JsonlAlertSink(args.alert_log)]),
    )
    engine = SimulationEngine(
        catalog,
        pipeline=pipeline,
        config=EngineConfig(tick_interval_sec=args.tick, speed=args.speed, seed=args.seed),
    )

    print(f"[START] {args.subject} -> {scenario.name} ({scenario.duration_min:g} min) targets={sorted(scenario.alert_targets)}")
    inst = engine.start(args.subject, scenario.id)

    async def consumer():
        while True:
            record = await stream.consume()
            if record["kind"] == "sample":
                s = record["sample"]
                acc = s["acceleration"]
                print(
                    f"#{s['sample_index']:>4} {s['timestamp']} | "
                    f"HR={s['heart_rate']} | T={s['core_temperature']:.1f}C | "
                    f"acc={acc['magnitude']:.2f}g | air={s['air_quality']} ({s['air_quality_category']})"
                    + (f" | faults={','.join(s['equipment_faults'])}" if s["equipment_faults"] else "")
                )
            else:
                ev = record["event"]
                a = ev["alert"]
                print(
                    f"  [ALERT {ev['kind'].upper()}] {a['type']} severity={a['severity']} "
                    f"priority={a['priority']} | {a['message']}"
                )

    consumer_task = asyncio.create_task(consumer())
    try:
        await engine.drain()
        # let the consumer print what is still queued
        while stream.pending:
            await asyncio.sleep(0.01)
    except (asyncio.CancelledError, KeyboardInterrupt):
        pass
    finally:
        if engine.is_active(args.subject):
            engine.stop(args.subject)
        consumer_task.cancel()
        await asyncio.gather(consumer_task, return_exceptions=True)

        lat = inst.latency.stats() or {"avg_ms": 0.0, "p95_ms": 0.0}
        print(
            f"[DONE] state={inst.state.value} ticks={inst.tick} samples={inst.samples} | "
            f"alerts={pipeline.stats['alerts_emitted']} sink_errors={pipeline.stats['sink_errors']} | "
            f"tick_avg={lat['avg_ms']:.2f}ms p95={lat['p95_ms']:.2f}ms"
        )
        for a in pipeline.active_alerts(args.subject):
            print(f"  [OPEN] {a.type} {a.severity.label} since {a.created_at.isoformat()}")


if __name__ == "__main__":
    try:
        asyncio.run(main(parse_args()))
    except KeyboardInterrupt:
        pass
