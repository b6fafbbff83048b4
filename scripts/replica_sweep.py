"""Verify replica health for every record of one identity and print a table."""

from __future__ import annotations

import argparse
import sys
from typing import Sequence

from cipher_vault.config import CipherVaultConfig
from cipher_vault.models import FileRecord, HealthStatus
from cipher_vault.runtime import CipherVaultRuntime


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("identity", help="Owner identity whose records are verified")
    parser.add_argument("--dsn", help="Record store DSN (defaults to CIPHER_VAULT_DATABASE_DSN)")
    parser.add_argument("--timeout", type=float, help="Per-probe timeout in seconds")
    parser.add_argument("--heal", action="store_true", help="Re-pin and re-verify records that are not healthy")
    return parser.parse_args(argv)


def _format_row(record: FileRecord) -> str:
    status = record.health_status.value if record.health_status else "-"
    return f"{record.id:<36}  {status:<10}  {record.current_replicas}/{record.target_replicas}  {record.display_name}"


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    config = CipherVaultConfig.from_env()
    if args.dsn:
        config.database.dsn = args.dsn
    if args.timeout is not None:
        config.replicas.probe_timeout_seconds = args.timeout
    runtime = CipherVaultRuntime.bootstrap(config)
    try:
        owner = runtime.session.connect(args.identity)
        records = runtime.replica_monitor.sweep(owner)
        if args.heal:
            records = [
                runtime.replica_monitor.heal(record.id) if record.health_status != HealthStatus.HEALTHY else record
                for record in records
            ]
    finally:
        runtime.shutdown()
    print(f"{'RECORD':<36}  {'STATUS':<10}  REPLICAS  NAME")
    for record in records:
        print(_format_row(record))
    unhealthy = sum(1 for record in records if record.current_replicas < config.replicas.healthy_threshold)
    print(f"\n{len(records)} record(s) checked, {unhealthy} below threshold")
    return 1 if unhealthy else 0


if __name__ == "__main__":
    sys.exit(main())
