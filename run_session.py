#!/usr/bin/env python3
"""
Run a TRIAD three-role dialogue session, or serve the observer API.

Usage:
    python run_session.py --topic "Why do refrigerators hum?" --turns 6
    python run_session.py --strategy balanced --population sessions/population.json
    python run_session.py --serve --port 5050
"""

import sys
import argparse
from pathlib import Path

# Add parent to path so we can import triad as a package
sys.path.insert(0, str(Path(__file__).parent))

from triad.roles import ROLE_ORDER, STRATEGIES, TriadConfig
from triad.completion_client import CompletionClient, CompletionError, resolve_endpoint
from triad.orchestrator import run_session


def check_backends(config: TriadConfig) -> bool:
    """Print backend reachability per role. Returns False if any is down."""
    ok = True
    for role in ROLE_ORDER:
        role_config = config.roles[role]
        try:
            endpoint = resolve_endpoint(role_config.provider, role_config.endpoint)
        except CompletionError as e:
            print(f"  {role.value:<10} {role_config.provider:<18} error: {e.detail}")
            ok = False
            continue
        running = CompletionClient.is_running(endpoint)
        status = "ok" if running else "not reachable"
        print(f"  {role.value:<10} {role_config.model:<18} {endpoint} ({status})")
        ok = ok and running
    return ok


def main():
    parser = argparse.ArgumentParser(description="Run a TRIAD dialogue session")
    parser.add_argument('--config', type=Path, default=Path("config/default.yaml"),
                        help="Session config YAML")
    parser.add_argument('--prompts', type=Path, help="Directory of <role>.md prompt overrides")
    parser.add_argument('--topic', help="Override the session topic")
    parser.add_argument('--turns', type=int, help="Override max turns (three utterances each)")
    parser.add_argument('--strategy', choices=STRATEGIES, help="Speaker strategy")
    parser.add_argument('--output', type=Path, default=Path("sessions"),
                        help="Directory for session logs")
    parser.add_argument('--population', type=Path,
                        help="Prompt population JSON to load before and save after the run")
    parser.add_argument('--dry-run', action='store_true', help="Check backends without running")
    parser.add_argument('--serve', action='store_true', help="Run the observer server instead")
    parser.add_argument('--host', default="0.0.0.0")
    parser.add_argument('--port', type=int, default=5050)
    args = parser.parse_args()

    if args.serve:
        from triad.server import run_server
        run_server(host=args.host, port=args.port)
        return

    if not args.config.exists():
        print(f"Error: config not found: {args.config}")
        sys.exit(1)

    config = TriadConfig.from_yaml(args.config)

    print("TRIAD Session")
    print("=" * 50)
    print(f"Config: {args.config}")
    print(f"Topic: {args.topic or config.topic}")
    print(f"Strategy: {args.strategy or config.strategy}")
    print(f"Turns: {args.turns or config.max_turns}")
    print("Backends:")
    reachable = check_backends(config)
    print("=" * 50)

    if args.dry_run:
        print("\nDry run - no session will be executed.")
        return

    if not reachable:
        print("Error: not every backend is reachable. Start the model servers first.")
        sys.exit(1)

    orchestrator = run_session(
        config_path=args.config,
        output_dir=args.output,
        topic=args.topic,
        max_turns=args.turns,
        strategy=args.strategy,
        population_path=args.population,
        prompts_dir=args.prompts,
    )

    print(f"\nSession {orchestrator.session_id}: {orchestrator.utterance_count} utterances")
    print(f"Results saved to: {args.output}/")


if __name__ == "__main__":
    main()
