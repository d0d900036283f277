import argparse
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pandas as pd

from generators.scenarios import load_scenarios
from realtime.engine import run_scenario
from realtime.logs import setup_logging
from realtime.pipeline import MonitoringPipeline
from realtime.report import alerts_frame, samples_frame


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Generate a labelled synthetic firefighter telemetry dataset by running scenarios offline."
    )
    parser.add_argument(
        "--scenarios",
        type=str,
        default=None,
        help="Alternative scenarios JSON file.",
    )
    parser.add_argument(
        "--only",
        type=str,
        nargs="*",
        default=None,
        help="Scenario ids to run (default: all).",
    )
    parser.add_argument(
        "--subjects-per-scenario",
        type=int,
        default=5,
        help="Number of firefighters simulated per scenario.",
    )
    parser.add_argument(
        "--tick-seconds",
        type=float,
        default=10.0,
        help="Simulated seconds between samples.",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=42,
    )
    parser.add_argument(
        "--output",
        type=str,
        default="data/firefighter_vitals.csv",
        help="Path to output samples CSV file (alerts go next to it).",
    )
    parser.add_argument("--log-level", type=str, default="WARNING")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    setup_logging(args.log_level)

    catalog = load_scenarios(args.scenarios)
    scenario_ids = args.only or catalog.ids()

    print(
        f"Generating dataset | scenarios={len(scenario_ids)}, "
        f"subjects_per_scenario={args.subjects_per_scenario}, "
        f"tick={args.tick_seconds}s"
    )

    start = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
    sample_frames, alert_frames = [], []
    run_no = 0
    for scenario_id in scenario_ids:
        scenario = catalog.get_scenario(scenario_id)
        for i in range(args.subjects_per_scenario):
            subject_id = f"{scenario_id}-FF-{i + 1:03d}"
            result = run_scenario(
                scenario,
                subject_id,
                pipeline=MonitoringPipeline(),
                start_time=start + timedelta(hours=run_no),
                tick_interval_sec=args.tick_seconds,
                seed=args.seed + run_no,
            )
            run_no += 1
            sample_frames.append(samples_frame(result.samples))
            alert_frames.append(alerts_frame(result.events))
        print(f"  {scenario_id}: done")

    samples = pd.concat(sample_frames, ignore_index=True) if sample_frames else pd.DataFrame()
    alerts = pd.concat(alert_frames, ignore_index=True) if alert_frames else pd.DataFrame()

    output_path = Path(args.output)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    alerts_path = output_path.with_name(output_path.stem + "_alerts.csv")

    samples.to_csv(output_path, index=False)
    alerts.to_csv(alerts_path, index=False)

    print(f"Saved samples to: {output_path.resolve()}")
    print(f"Saved alerts to: {alerts_path.resolve()}")
    print(f"Rows: samples={len(samples)}, alerts={len(alerts)}")
    if not alerts.empty:
        print(alerts.groupby(["type", "kind"]).size().to_string())


if __name__ == "__main__":
    main()
