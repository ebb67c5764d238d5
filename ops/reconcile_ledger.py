from __future__ import annotations

import argparse
import json
import sys


def _bootstrap_app():
    from byblos import create_app

    app = create_app()
    app.app_context().push()
    return app


def main():
    parser = argparse.ArgumentParser(description="Recompute ledger balances from entries and report drift.")
    parser.add_argument("--tolerance", type=int, default=0, help="Allowed drift in minor units per account.")
    parser.add_argument("--audit", action="store_true", help="Record an audit event when drift is found.")
    args = parser.parse_args()

    _bootstrap_app()
    from byblos.extensions import db
    from byblos.services.escrow_ledger import recompute_balances
    from byblos.utils.audit import record_audit

    summary = recompute_balances(tolerance=max(0, int(args.tolerance)))
    drift_count = int(summary.get("drift_count") or 0)
    if args.audit and drift_count:
        record_audit(
            "ledger_drift_detected",
            subject_type="ledger",
            severity="ERROR",
            metadata={"drift_count": drift_count, "drift_items": summary.get("drift_items")},
        )
        db.session.commit()

    print(json.dumps(summary, indent=2))
    return 0 if drift_count == 0 else 2


if __name__ == "__main__":
    sys.exit(main())
