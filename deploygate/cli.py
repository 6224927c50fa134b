import argparse
import json
import sys
from typing import Any, Dict, List

import yaml

from deploygate import __version__
from deploygate.errors import NotFoundError, PreconditionError
from deploygate.observability.logging import configure_logging


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="deploygate")
    p.add_argument("--log-level", default=None, help="Override DEPLOYGATE_LOG_LEVEL")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("init-db", help="Create or upgrade the schema.")

    seed_p = sub.add_parser("seed", help="Load deployments, environments, resources, policies and versions from YAML.")
    seed_p.add_argument("path", help="Path to workspace YAML")
    seed_p.add_argument("--no-dispatch", action="store_true", help="Persist only; do not create or dispatch work")

    eval_p = sub.add_parser("evaluate", help="Explain why work is blocked.")
    target = eval_p.add_mutually_exclusive_group(required=True)
    target.add_argument("--release-target", help="Release target id")
    target.add_argument("--environment", help="Environment id")

    rollout_p = sub.add_parser("rollout", help="Preview the rollout of a version across an environment.")
    rollout_p.add_argument("--version", required=True, help="Version id")
    rollout_p.add_argument("--environment", required=True, help="Environment id")

    tick_p = sub.add_parser("tick", help="Re-dispatch pending triggers once.")
    tick_p.add_argument("--format", default="text", choices=["text", "json"])

    redeploy_p = sub.add_parser("redeploy", help="Re-run the current release of a target.")
    redeploy_p.add_argument("release_target_id")
    redeploy_p.add_argument("--force", action="store_true", help="Bypass every rule except locking")

    pin_p = sub.add_parser("pin", help="Pin a release target to a version.")
    pin_p.add_argument("release_target_id")
    pin_p.add_argument("version_id")
    pin_p.add_argument("--force", action="store_true", help="Allow rolling back to an older version")

    unpin_p = sub.add_parser("unpin", help="Remove a release target's pin.")
    unpin_p.add_argument("release_target_id")

    approve_p = sub.add_parser("approve", help="Record an approval decision.")
    approve_p.add_argument("--version", required=True)
    approve_p.add_argument("--environment", required=True)
    approve_p.add_argument("--approver", required=True)
    approve_p.add_argument("--status", default="approved", choices=["approved", "rejected"])
    approve_p.add_argument("--reason")

    job_p = sub.add_parser("job-status", help="Report a job status as the job agent would.")
    job_p.add_argument("job_id")
    job_p.add_argument("status")
    job_p.add_argument("--message")
    job_p.add_argument("--external-id")

    serve_p = sub.add_parser("serve", help="Run the HTTP API.")
    serve_p.add_argument("--host", default="127.0.0.1")
    serve_p.add_argument("--port", type=int, default=8000)

    sub.add_parser("version", help="Print version.")
    return p


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def load_workspace(path: str) -> Dict[str, List[Dict[str, Any]]]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    return data


def seed_workspace(data: Dict[str, List[Dict[str, Any]]], *, dispatch: bool = True) -> Dict[str, Any]:
    from deploygate.dispatch import TriggerScope
    from deploygate.engine import run_cycle
    from deploygate.models import (
        Deployment,
        DeploymentVersion,
        Environment,
        Resource,
        TriggerCause,
        VersionDependency,
    )
    from deploygate.policy.types import Policy
    from deploygate.release_targets import compute_release_targets
    from deploygate.storage import repository
    from deploygate.utils.canonical import parse_ts, utc_now

    for item in data.get("deployments") or []:
        repository.upsert_deployment(Deployment(**item))
    for item in data.get("environments") or []:
        repository.upsert_environment(Environment(**item))
    for item in data.get("resources") or []:
        repository.upsert_resource(Resource(**item))
    for item in data.get("policies") or []:
        repository.upsert_policy(Policy.model_validate(item))

    inserted = 0
    for item in data.get("versions") or []:
        fields = dict(item)
        deps = tuple(VersionDependency(**d) for d in fields.pop("dependencies", None) or [])
        created_at = parse_ts(fields.pop("created_at", None)) or utc_now()
        fields.setdefault("name", fields.get("tag"))
        repository.insert_version(DeploymentVersion(created_at=created_at, dependencies=deps, **fields))
        inserted += 1

    changes = compute_release_targets()
    summary: Dict[str, Any] = {
        "release_targets_created": len(changes.created),
        "release_targets_removed": len(changes.removed),
        "versions_inserted": inserted,
    }
    if dispatch:
        summary["cycle"] = run_cycle(TriggerCause.NEW_VERSION.value, TriggerScope()).to_dict()
    return summary


def main() -> int:
    if len(sys.argv) == 1:
        sys.argv.append("--help")

    p = build_parser()
    args = p.parse_args()
    configure_logging(level=args.log_level)

    if args.cmd == "version":
        print(f"deploygate {__version__}")
        return 0

    if args.cmd == "serve":
        import uvicorn

        uvicorn.run("deploygate.server:app", host=args.host, port=args.port)
        return 0

    from deploygate import engine, queries
    from deploygate.storage.schema import init_db

    try:
        if args.cmd == "init-db":
            print(f"schema {init_db()}")
            return 0

        init_db()

        if args.cmd == "seed":
            _print_json(seed_workspace(load_workspace(args.path), dispatch=not args.no_dispatch))
            return 0

        if args.cmd == "evaluate":
            if args.release_target:
                _print_json(queries.release_target_rejections(args.release_target))
            else:
                _print_json(queries.environment_rejections(args.environment))
            return 0

        if args.cmd == "rollout":
            _print_json(queries.version_rollout(args.version, args.environment))
            return 0

        if args.cmd == "tick":
            from deploygate import scheduler

            result = scheduler.tick()
            if args.format == "json":
                _print_json(result)
            elif result.get("skipped"):
                print(f"tick skipped: {result.get('reason')}")
            else:
                counts = result.get("counts", {})
                print("tick " + (" ".join(f"{k}={v}" for k, v in sorted(counts.items())) or "idle"))
            return 2 if result.get("skipped") else 0

        if args.cmd == "redeploy":
            _print_json(engine.redeploy(args.release_target_id, force=args.force).to_dict())
            return 0

        if args.cmd == "pin":
            _print_json(engine.pin_version(args.release_target_id, args.version_id, force=args.force).to_dict())
            return 0

        if args.cmd == "unpin":
            _print_json(engine.unpin_version(args.release_target_id).to_dict())
            return 0

        if args.cmd == "approve":
            from deploygate.approvals.store import record_approval
            from deploygate.storage import repository

            record = record_approval(
                version_id=args.version,
                environment_id=args.environment,
                approver_id=args.approver,
                status=args.status,
                reason=args.reason,
            )
            targets = repository.list_release_targets(environment_id=args.environment)
            report = engine.tick(release_target_ids=[t.id for t in targets])
            _print_json({"approval_id": record.id, "dispatch": report.to_dict()})
            return 0

        if args.cmd == "job-status":
            job, report = engine.on_job_updated(
                args.job_id,
                args.status,
                message=args.message,
                external_id=args.external_id,
            )
            _print_json({"job_id": job.id, "status": job.status, "dispatch": report.to_dict() if report else None})
            return 0
    except NotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except PreconditionError as e:
        print(f"Error [{e.code}]: {e}", file=sys.stderr)
        return 1
    except (ValueError, yaml.YAMLError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
