#!/usr/bin/env python3
"""
Seed or update a tenant's workflow rules from a YAML rule file.

For each rule in the file: if the tenant already has a rule for that
process type, it is replaced (version + 1); otherwise it is created.
In-flight workflow instances keep the rule snapshot they started with.

Usage:
    python3 scripts/load_rules.py config/rules.example.yaml
    python3 scripts/load_rules.py rules.yaml --tenant acme --dry-run
    DATABASE_URL=postgresql://... python3 scripts/load_rules.py rules.yaml
"""

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Load workflow rules from YAML")
    p.add_argument("rule_file", type=Path, help="YAML rule-set file")
    p.add_argument("--tenant", default=None, help="Override the file's tenant_id")
    p.add_argument("--config", default=None, help="Engine settings YAML (else APPROVAL_ENGINE_CONFIG)")
    p.add_argument("--actor", default="rules-loader", help="Actor recorded in the audit trail")
    p.add_argument("--dry-run", action="store_true", help="Parse and validate only; write nothing")
    return p.parse_args()


def main() -> int:
    args = _parse_args()

    from approval_config import get_settings, load_rule_file
    from approval_engines.conditions import RestrictedConditionEvaluator
    from approval_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url
    from approval_kernel.exceptions import ApprovalEngineError
    from approval_kernel.logging_config import configure_logging
    from approval_services.rule_admin import RuleAdminService

    settings = get_settings(args.config)
    configure_logging(level=settings.log_level)

    try:
        rules = load_rule_file(args.rule_file, args.tenant)
    except (KeyError, ValueError) as exc:
        print(f"ERROR: {args.rule_file}: {exc}", file=sys.stderr)
        return 1

    if args.dry_run:
        evaluator = RestrictedConditionEvaluator()
        failed = 0
        for rule in rules:
            errors = rule.validate() + evaluator.validate(rule.conditions)
            status = "OK" if not errors else "INVALID: " + "; ".join(errors)
            failed += bool(errors)
            print(f"  {rule.tenant_id}/{rule.process_type}: {rule.total_steps} step(s) {status}")
        return 1 if failed else 0

    init_engine_from_url(settings.database_url)
    create_tables()
    admin = RuleAdminService(get_session_factory())

    failures = 0
    for rule in rules:
        existing, _ = admin.list_rules(rule.tenant_id, rule.process_type, limit=1)
        try:
            if existing:
                saved = admin.update(rule.tenant_id, existing[0].rule_id, rule, actor_id=args.actor)
                action = "updated"
            else:
                saved = admin.create(rule, actor_id=args.actor)
                action = "created"
        except ApprovalEngineError as exc:
            failures += 1
            print(f"  FAILED {rule.tenant_id}/{rule.process_type}: {exc}", file=sys.stderr)
            continue
        print(
            f"  {action} {saved.tenant_id}/{saved.process_type} "
            f"v{saved.version} ({saved.total_steps} steps) id={saved.rule_id}"
        )

    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
