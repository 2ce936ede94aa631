"""
Rollout engine CLI: plan, apply, destroy, publish, deploy, status.
Every command reads an engine.yaml and keeps its state in .rollout-engine/ (or ROLLOUT_STATE_DIR).
"""

import logging
from pathlib import Path
import sys
from typing import Any

import yaml

from rollout.config import EngineConfig
from rollout.engine import ServiceEngine, aws_backend, memory_backend
from rollout.errors import (
    CircuitBreakerTripped,
    DependentsRemainError,
    PartialApplyError,
    RolloutError,
)
from rollout.provisioner import Action, Plan
from rollout.store import StateStore

LOG = logging.getLogger("rollout")


def _engine(args: Any) -> ServiceEngine:
    config = EngineConfig.from_file(args.engine_yaml)
    backend = memory_backend() if args.backend == "memory" else aws_backend(config)
    return ServiceEngine(config, backend, StateStore(args.state_dir), max_workers=args.max_workers)


def _print_plan(plan: Plan) -> None:
    symbols = {Action.CREATE: "+", Action.UPDATE: "~", Action.REPLACE: "-/+", Action.NOOP: " "}
    for step in plan.steps:
        reason = f"  ({step.reason})" if step.reason else ""
        print(f"  {symbols[step.action]:>3} {step.name} [{step.kind}]{reason}")
    for name in plan.orphans:
        print(f"   ?  {name} (no longer in engine.yaml; remove with destroy --target)")
    counts = [f"{n} to {action}" for action, n in plan.summary().items() if n and action != Action.NOOP.value]
    print(", ".join(counts) if counts else "No changes.")


def _cmd_plan(args: Any) -> None:
    engine = _engine(args)
    plan = engine.plan(args.image_tag)
    print(f"Plan for service '{engine.config.service_name}':")
    _print_plan(plan)


def _cmd_apply(args: Any) -> None:
    engine = _engine(args)
    plan = engine.plan(args.image_tag)
    _print_plan(plan)
    if plan.is_empty():
        return
    print(f"Provisioning infrastructure for service '{engine.config.service_name}'...")
    try:
        engine.apply(args.image_tag)
    except PartialApplyError as e:
        print(f"Apply stopped at '{e.failed_step}'. Completed: {', '.join(e.completed) or 'none'}", file=sys.stderr)
        raise
    print(f"Service '{engine.config.service_name}' provisioned.")
    for key, value in sorted(engine.provisioner.exports.items()):
        print(f"  {key}: {value}")


def _cmd_destroy(args: Any) -> None:
    engine = _engine(args)
    what = ", ".join(args.target) if args.target else f"all infrastructure for service '{engine.config.service_name}'"
    if not args.yes:
        confirm = input(f"This will remove {what}. Continue? [y/N]: ")
        if confirm.strip().lower() != "y":
            print("Cancelled.")
            return
    try:
        engine.destroy(args.target or None, force=args.force)
    except DependentsRemainError as e:
        print(f"{e}", file=sys.stderr)
        raise
    print(f"Removed {what}.")


def _cmd_publish(args: Any) -> None:
    engine = _engine(args)
    artifact = engine.publish(args.context, reuse_tag=args.reuse_tag)
    print(f"Published {artifact.image_ref} ({artifact.digest})")


def _cmd_deploy(args: Any) -> None:
    engine = _engine(args)
    try:
        run = engine.deploy(args.context, reuse_tag=args.reuse_tag)
    except CircuitBreakerTripped as e:
        print(f"Deployment rolled back: {e}", file=sys.stderr)
        raise
    if run is None:
        print("Service already runs the current image.")
        return
    print(f"Deployment {run.id} reached steady state on {run.new_version}.")


def _cmd_status(args: Any) -> None:
    engine = _engine(args)
    yaml.safe_dump(engine.status(), sys.stdout, default_flow_style=False, sort_keys=False)


def main(argv: list[str] | None = None) -> None:
    import argparse

    parser = argparse.ArgumentParser(
        description="Provision a load-balanced container service and roll out new images with health gating."
    )
    parser.add_argument("--backend", choices=["aws", "memory"], default="aws", help="Where resources live")
    parser.add_argument("--state-dir", type=Path, default=None, help="State directory (default: .rollout-engine)")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    parser.add_argument("--max-workers", type=int, default=4, help="Parallel provisioning steps per level")
    sub = parser.add_subparsers(dest="command", required=True)

    plan_p = sub.add_parser("plan", help="Show what apply would change")
    plan_p.add_argument("engine_yaml", help="Path to engine.yaml")
    plan_p.add_argument("--image-tag", default=None, help="Image tag to plan for (default: current)")

    apply_p = sub.add_parser("apply", help="Provision or update infrastructure")
    apply_p.add_argument("engine_yaml", help="Path to engine.yaml")
    apply_p.add_argument("--image-tag", default=None, help="Image tag to provision (default: current)")

    destroy_p = sub.add_parser("destroy", help="Remove infrastructure")
    destroy_p.add_argument("engine_yaml", help="Path to engine.yaml")
    destroy_p.add_argument("--target", action="append", default=[], help="Resource to remove (repeatable)")
    destroy_p.add_argument("--force", action="store_true", help="Also remove resources that depend on the targets")
    destroy_p.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")

    publish_p = sub.add_parser("publish", help="Build and push an image under a fresh tag")
    publish_p.add_argument("engine_yaml", help="Path to engine.yaml")
    publish_p.add_argument("--context", default=None, help="Build context (default: registry.buildContext)")
    publish_p.add_argument("--reuse-tag", action="store_true", help="Reuse the tag of an identical image")

    deploy_p = sub.add_parser("deploy", help="Publish, provision and roll the service onto the new image")
    deploy_p.add_argument("engine_yaml", help="Path to engine.yaml")
    deploy_p.add_argument("--context", default=None, help="Build context (default: registry.buildContext)")
    deploy_p.add_argument("--reuse-tag", action="store_true", help="Reuse the tag of an identical image")

    status_p = sub.add_parser("status", help="Show provisioned resources and the current deployment")
    status_p.add_argument("engine_yaml", help="Path to engine.yaml")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    commands = {
        "plan": _cmd_plan,
        "apply": _cmd_apply,
        "destroy": _cmd_destroy,
        "publish": _cmd_publish,
        "deploy": _cmd_deploy,
        "status": _cmd_status,
    }
    try:
        commands[args.command](args)
    except RolloutError as e:
        LOG.error("%s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
