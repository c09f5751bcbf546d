# cli.py
from __future__ import annotations

import json
import logging
import subprocess
import sys
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import quote, urljoin

import click

from .config import PipelineDefinition, load_pipeline
from .errors import DefinitionError, StageflowError
from .executors import LocalExecutor
from .git_facts.git import get_actor, get_current_ref, head_sha
from .kube import orchestrator_from_definition
from .model import RunStatus, TriggerEvent, TriggerKind
from .service import PipelineService
from .ui.console import Console, get_console, set_console


DEFAULT_PIPELINE = "stageflow_pipeline.py"


def find_pipeline_files() -> list[Path]:
    """
    Find all pipeline files in the current directory.

    Returns:
        List of Path objects for pipeline files
    """
    pipeline_files = []
    current_dir = Path(".")

    default_pipeline = current_dir / DEFAULT_PIPELINE
    if default_pipeline.exists():
        pipeline_files.append(default_pipeline)

    for path in current_dir.glob("*_pipeline.py"):
        if path != default_pipeline:
            pipeline_files.append(path)

    return sorted(pipeline_files)


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Discover pipeline file from argument or default.

    Raises:
        SystemExit: If no pipeline can be found or several candidates exist
    """
    console = get_console()

    if pipeline_arg:
        pipeline_path = Path(pipeline_arg)
        if not pipeline_path.exists() and not pipeline_path.suffix:
            pipeline_path = Path(str(pipeline_path) + ".py")
        if not pipeline_path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {pipeline_arg}",
                suggestion="Create a pipeline file or specify a different path:\n  stageflow run --pipeline my_pipeline.py",
            )
            sys.exit(1)
        return pipeline_path

    pipeline_files = find_pipeline_files()

    if len(pipeline_files) == 0:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline files.",
            details=[
                "Looked for:",
                f"  {DEFAULT_PIPELINE}",
                "  *_pipeline.py",
            ],
            suggestion=f"Create a pipeline file:\n  {DEFAULT_PIPELINE}\n\nOr specify one explicitly:\n  stageflow run --pipeline pipeline.yaml",
        )
        sys.exit(1)

    if len(pipeline_files) > 1:
        file_list = "\n".join(f"  {f}" for f in pipeline_files)
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a pipeline explicitly:\n  stageflow run --pipeline {DEFAULT_PIPELINE}",
        )
        sys.exit(1)

    return pipeline_files[0]


def _load(pipeline_arg: str | None) -> tuple[Path, PipelineDefinition]:
    console = get_console()
    path = discover_pipeline(pipeline_arg)
    console.print_debug(f"Loading pipeline from {path.resolve()}")
    try:
        return path, load_pipeline(path)
    except (StageflowError, ValueError, FileNotFoundError) as e:
        console.print_error(
            "Failed to load pipeline",
            f"Could not load pipeline from {path}",
            details=[str(e)],
        )
        sys.exit(1)


def _git_or_exit(fn, what: str, flag: str) -> str:
    console = get_console()
    try:
        return fn()
    except subprocess.CalledProcessError:
        console.print_error(
            f"Could not determine git {what}",
            f"Could not get the current git {what}.",
            suggestion=f"Please specify {flag} explicitly.",
        )
    except FileNotFoundError:
        console.print_error(
            "Git command not found",
            "Could not find git command.",
            suggestion=f"Install Git or specify {flag} explicitly.",
        )
    sys.exit(1)


def _trigger_from_options(ref: str | None, commit: str | None, actor: str | None, event: str) -> TriggerEvent:
    return TriggerEvent(
        kind=TriggerKind(event),
        ref=ref or _git_or_exit(get_current_ref, "ref", "--ref"),
        commit=commit or _git_or_exit(head_sha, "commit", "--commit"),
        actor=actor or get_actor(),
    )


def _api_request(api: str, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
    """
    Call the control-plane API and return the decoded JSON body.
    Any failure is reported on the console and exits with status 1.
    """
    console = get_console()
    base_url = api.rstrip("/")
    url = urljoin(base_url + "/", path.lstrip("/"))

    data = json.dumps(body).encode("utf-8") if body is not None else None
    req = urllib.request.Request(url, data=data, headers={"Content-Type": "application/json"}, method=method)

    try:
        with urllib.request.urlopen(req) as response:
            response_data = response.read().decode("utf-8")
            if not response_data:
                console.print_error(
                    "Empty API response",
                    "Received empty response from API.",
                    suggestion=f"Check if the API at {base_url} is running correctly.",
                )
                sys.exit(1)
            return json.loads(response_data)
    except urllib.error.HTTPError as e:
        error_body = e.read().decode("utf-8") if e.fp else ""
        console.print_error(
            "API request failed",
            f"HTTP {e.code} {e.reason}",
            details=[error_body] if error_body else None,
            suggestion=f"Check the API at {base_url} and verify your request.",
        )
        sys.exit(1)
    except urllib.error.URLError as e:
        console.print_error(
            "Network error",
            f"Could not connect to {base_url}",
            details=[str(e.reason)],
            suggestion="Verify the API URL is correct and the API is running.",
        )
        sys.exit(1)
    except json.JSONDecodeError as e:
        console.print_error(
            "Invalid API response",
            "Could not parse JSON response from API.",
            details=[str(e)],
            suggestion=f"Check if the API at {base_url} is responding correctly.",
        )
        sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """stageflow: dependency-ordered pipelines with gated deployments."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--pipeline", default=None, help=f"Pipeline file (defaults to {DEFAULT_PIPELINE} if present)")
def plan(pipeline):
    """Validate a pipeline and print its stages in ready waves."""
    console = get_console()
    path, definition = _load(pipeline)
    try:
        graph = definition.build_graph()
    except DefinitionError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(1)
    console.print_info(f"{path.name}: {len(graph)} stage(s), {len(definition.environments)} environment(s)")
    console.print_plan(graph.waves())


@cli.command()
@click.option("--pipeline", default=None, help=f"Pipeline file (defaults to {DEFAULT_PIPELINE} if present)")
@click.option("--ref", default=None, help="Git ref (defaults to the current branch)")
@click.option("--commit", default=None, help="Commit id (defaults to HEAD)")
@click.option("--actor", default=None, help="Who triggered the run (defaults to git user.email)")
@click.option(
    "--event",
    type=click.Choice([k.value for k in TriggerKind]),
    default=TriggerKind.MANUAL.value,
    show_default=True,
)
@click.option("--workers", default=None, type=int, help="Number of parallel workers")
@click.option(
    "--approve",
    "approvals",
    multiple=True,
    metavar="ENV=REVIEWER",
    help="Pre-approve a deployment to ENV as REVIEWER (repeatable)",
)
@click.pass_context
def run(ctx, pipeline, ref, commit, actor, event, workers, approvals):
    """Run a pipeline locally and wait for it to finish."""
    console = get_console()
    path, definition = _load(pipeline)

    settings = definition.settings.with_env()
    if workers is not None:
        settings = settings.model_copy(update={"workers": workers})
    definition = definition.model_copy(update={"settings": settings})

    pre_approvals = []
    for item in approvals:
        env_name, sep, reviewer = item.partition("=")
        if not sep or not env_name or not reviewer:
            raise click.BadParameter(f"expected ENV=REVIEWER, got {item!r}", param_hint="--approve")
        pre_approvals.append((env_name, reviewer))

    trigger = _trigger_from_options(ref, commit, actor, event)

    try:
        service = PipelineService(
            definition,
            executor=LocalExecutor(repo_root=".", log_dir=settings.log_dir),
            orchestrator=orchestrator_from_definition(definition),
            on_transition=lambda _run, t: console.print_transition(t),
        )
    except DefinitionError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(1)

    admission = service.submit(trigger)
    run_id = admission.run.id
    console.print_run_started(
        run_id=run_id,
        pipeline=f"{definition.name} ({path.name})",
        ref=trigger.ref,
        commit=trigger.commit,
        stage_count=len(service.graph),
    )

    try:
        for env_name, reviewer in pre_approvals:
            service.approve(run_id, env_name, reviewer)
        summary = service.wait(run_id)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user, cancelling run")
        service.cancel(run_id)
        service.wait(run_id)
        sys.exit(130)
    except StageflowError as e:
        console.print_exception(e)
        service.cancel(run_id)
        service.wait(run_id)
        sys.exit(1)

    console.print_results(summary)
    if summary.status is not RunStatus.SUCCEEDED:
        sys.exit(1)


@cli.command()
@click.option("--api", required=True, help="API base URL (e.g., http://localhost:8000)")
@click.option("--ref", default=None, help="Git ref (defaults to the current branch)")
@click.option("--commit", default=None, help="Commit id (defaults to HEAD)")
@click.option("--actor", default=None, help="Who triggered the run (defaults to git user.email)")
@click.option(
    "--event",
    type=click.Choice([k.value for k in TriggerKind]),
    default=TriggerKind.PUSH.value,
    show_default=True,
)
def trigger(api, ref, commit, actor, event):
    """Send a trigger event to the control plane."""
    console = get_console()
    ev = _trigger_from_options(ref, commit, actor, event)
    result = _api_request(api, "POST", "/triggers", {
        "kind": ev.kind.value,
        "ref": ev.ref,
        "commit": ev.commit,
        "actor": ev.actor,
    })
    if result.get("duplicate"):
        console.print_info(f"Duplicate trigger, existing run: {result.get('run_id')}")
    else:
        console.print_info(f"Run {result.get('run_id')} ({result.get('status')})")


@cli.command()
@click.option("--api", required=True, help="API base URL (e.g., http://localhost:8000)")
@click.argument("run_id")
@click.argument("environment")
@click.argument("reviewer")
def approve(api, run_id, environment, reviewer):
    """Approve a pending deployment of RUN_ID to ENVIRONMENT."""
    console = get_console()
    result = _api_request(
        api,
        "POST",
        f"/runs/{quote(run_id)}/approvals",
        {"environment": environment, "reviewer": reviewer},
    )
    console.print_info(
        f"Approved {environment} for run {run_id}: "
        f"{len(result.get('reviewers', []))}/{result.get('required', '?')} reviewer(s)"
    )


@cli.command()
@click.option("--api", required=True, help="API base URL (e.g., http://localhost:8000)")
@click.argument("environment")
@click.option("--to", "target", default="previous", show_default=True, help="Reference to restore")
def rollback(api, environment, target):
    """Roll ENVIRONMENT back to an earlier reference."""
    console = get_console()
    result = _api_request(api, "POST", f"/environments/{quote(environment)}/rollback", {"target": target})
    console.print_info(f"{environment}: {result.get('result')} {result.get('reference')}")


@cli.command()
@click.option("--api", required=True, help="API base URL (e.g., http://localhost:8000)")
def environments(api):
    """List environments and what is deployed to them."""
    get_console().print_environments(_api_request(api, "GET", "/environments"))


if __name__ == "__main__":
    cli()
