"""
archflow command-line interface.

Runs a design through the whole pipeline against scripted capabilities,
inspects stored version history and validates scheduler configuration.

Usage:
    archflow run examples/sketch.json --store ./store --rule-set energy
    archflow run sketch.json --capability check-compliance=OpenAIComplianceCapability
    archflow history --store ./store <design-id>
    archflow history --store ./store
    archflow validate-config scheduler.json
"""

import json
import logging
import sys
from collections.abc import Mapping
from pathlib import Path
from typing import Any, NoReturn

import click
import jsonschema

from archflow.application import (
    DesignPipeline,
    JobScheduler,
    SchedulerConfig,
    load_scheduler_config,
)
from archflow.domain.exceptions import (
    ERRORS_BY_CODE,
    AmbiguousInputError,
    FatalError,
    NotFoundError,
    PipelineError,
    ValidationError,
)
from archflow.domain.interfaces import (
    CapabilityInterface,
    PipelineEventStoreInterface,
    VersionStoreInterface,
)
from archflow.domain.models import Design, Job, JobKind, Severity
from archflow.infrastructure import (
    CapabilityRegistry,
    FilesystemPipelineEventStore,
    FilesystemVersionStore,
    InMemoryPipelineEventStore,
    InMemoryReportStore,
    InMemoryVersionStore,
    MockCapability,
)

logger = logging.getLogger(__name__)

_SUPPRESS_LOGGERS = ("httpx", "httpcore", "openai", "urllib3")

_SEVERITY_COLOURS = {
    Severity.CRITICAL: "red",
    Severity.WARNING: "yellow",
    Severity.INFO: None,
}


def _configure_logging(debug: bool, log_file: str | None = None) -> None:
    """Set up logging, suppressing noisy third-party loggers.

    When *log_file* is set, detailed logs go to the file and a concise
    stream is kept on stderr so the user still sees progress.
    """
    level = logging.DEBUG if debug else logging.INFO
    root = logging.getLogger()
    root.setLevel(level)

    fmt_detailed = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    fmt_concise = logging.Formatter("%(levelname)s - %(message)s")

    if log_file:
        fh = logging.FileHandler(log_file, mode="a")
        fh.setLevel(level)
        fh.setFormatter(fmt_detailed)
        root.addHandler(fh)
        sh = logging.StreamHandler()
        sh.setLevel(logging.WARNING)
        sh.setFormatter(fmt_concise)
        root.addHandler(sh)
    else:
        sh = logging.StreamHandler()
        sh.setLevel(level if debug else logging.WARNING)
        sh.setFormatter(fmt_detailed)
        root.addHandler(sh)

    for name in _SUPPRESS_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def _report(msg: str, *, warn: bool = False, fg: str | None = None) -> None:
    """Log a message and echo it to the terminal."""
    if warn:
        logger.warning(msg)
    else:
        logger.info(msg)
    styled = click.style(msg, fg=fg) if fg else msg
    click.echo(styled)


# =========================================================================
# Scripted capabilities
# =========================================================================


def _outcome(script: Any) -> Any:
    """A scripted outcome: {"error": code, "message": ...} raises, anything else is returned."""
    if isinstance(script, Mapping) and "error" in script:
        cls = ERRORS_BY_CODE.get(script["error"], FatalError)
        return cls(script.get("message"), detail=script.get("detail", "scripted failure"))
    return script


def _compliance_capability(by_rule_set: Mapping[str, Any]) -> MockCapability:
    def answer(job: Job) -> Mapping[str, Any]:
        rule_set = job.params["rule_set"]
        if rule_set not in by_rule_set:
            return {"score": 1.0, "violations": []}
        outcome = _outcome(by_rule_set[rule_set])
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return MockCapability([answer], cycle=True)


def _build_capabilities(scripts: Mapping[str, Any]) -> dict[JobKind, MockCapability]:
    """One MockCapability per job kind from the sketch file's "capabilities" block."""
    capabilities: dict[JobKind, MockCapability] = {}
    for kind in JobKind:
        script = scripts.get(kind.value)
        if kind is JobKind.CHECK_COMPLIANCE:
            capabilities[kind] = _compliance_capability(script or {})
            continue
        if script is None:
            script = [{"artifact": f"mock://{kind.value}"}]
        elif isinstance(script, Mapping):
            script = [script]
        capabilities[kind] = MockCapability([_outcome(s) for s in script], cycle=True)
    return capabilities


def _registered_capabilities(specs: tuple[str, ...]) -> dict[JobKind, CapabilityInterface]:
    """Capabilities named as KIND=NAME, created through the capability registry.

    Raises:
        ValidationError: If a KIND=NAME pair is malformed or NAME cannot be created
    """
    capabilities: dict[JobKind, CapabilityInterface] = {}
    for spec in specs:
        kind_value, _, name = spec.partition("=")
        try:
            kind = JobKind(kind_value)
        except ValueError as e:
            raise ValidationError(
                f"--capability expects KIND=NAME, got {spec!r}.",
                detail=f"kinds: {', '.join(k.value for k in JobKind)}",
            ) from e
        if not name:
            raise ValidationError(f"--capability expects KIND=NAME, got {spec!r}.")
        try:
            capabilities[kind] = CapabilityRegistry.create(name)
        except KeyError as e:
            raise ValidationError(f"Capability {name!r} is not registered.", detail=str(e)) from e
        except (TypeError, ValueError) as e:
            raise ValidationError(
                f"Capability {name!r} could not be created.", detail=str(e)
            ) from e
        logger.info("Using %s for %s jobs", name, kind.value)
    return capabilities


# =========================================================================
# Helpers
# =========================================================================


def _load_json(path: str) -> dict[str, Any]:
    try:
        with open(path) as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValidationError(f"{path} is not valid JSON.", detail=str(e)) from e
    if not isinstance(data, dict):
        raise ValidationError(f"{path} must contain a JSON object.")
    return data


def _exit_for(error: PipelineError) -> NoReturn:
    _report(f"Error [{error.code}]: {error.user_message}", warn=True, fg="red")
    if error.detail:
        logger.debug("Detail: %s", error.detail)
    sys.exit(error.exit_code)


def _settle(pipeline: DesignPipeline, design_id: str, step: str, timeout: float) -> Design:
    """Wait for a step's jobs and stop the run if the design failed."""
    try:
        design = pipeline.wait_idle(design_id, timeout)
    except TimeoutError:
        pipeline.cancel(design_id)
        _exit_for(FatalError(f"The {step} step did not finish within {timeout:.0f}s."))
    if design.failure is not None:
        cls = ERRORS_BY_CODE.get(design.failure.code, FatalError)
        _exit_for(cls(design.failure.user_message))
    click.echo(f"  {step}: {pipeline.stage(design_id).value} ({design.head_version_id})")
    return design


def _stores(store: str | None) -> tuple[VersionStoreInterface, PipelineEventStoreInterface]:
    if store is None:
        return InMemoryVersionStore(), InMemoryPipelineEventStore()
    return FilesystemVersionStore(store), FilesystemPipelineEventStore(Path(store))


# =========================================================================
# Commands
# =========================================================================


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option(
    "--log-file",
    default=None,
    type=click.Path(),
    help="Write logs to file instead of stderr",
)
def cli(debug: bool, log_file: str | None) -> None:
    """Sketch-to-export design pipeline."""
    _configure_logging(debug, log_file=log_file)


@cli.command()
@click.argument("sketch_json", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--store",
    default=None,
    type=click.Path(file_okay=False),
    help="Directory for persistent versions and events (default: in memory)",
)
@click.option(
    "--rule-set",
    "rule_sets",
    multiple=True,
    help="Extra compliance rule-set to check (fire and accessibility always run)",
)
@click.option("--format", "target_format", default="ifc", help="Export format (default: ifc)")
@click.option(
    "--acknowledge-violations",
    is_flag=True,
    help="Export even if the compliance report is not clean",
)
@click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(exists=True, dir_okay=False),
    help="Scheduler configuration JSON",
)
@click.option(
    "--capability",
    "capability_specs",
    multiple=True,
    metavar="KIND=NAME",
    help="Use a registered capability for a job kind instead of the scripted one",
)
@click.option("--timeout", default=600.0, type=float, help="Seconds to wait per step")
def run(
    sketch_json: str,
    store: str | None,
    rule_sets: tuple[str, ...],
    target_format: str,
    acknowledge_violations: bool,
    config_path: str | None,
    capability_specs: tuple[str, ...],
    timeout: float,
) -> None:
    """Run a sketch through analysis, rendering, compliance and export.

    SKETCH_JSON holds the sketch reference plus scripted capability
    outcomes under "capabilities" (keyed by job kind; check-compliance is
    keyed by rule-set).

    Job kinds named with --capability use a capability from the registry
    (entry-point group archflow.capabilities) instead.
    """
    try:
        sketch = _load_json(sketch_json)
        config = load_scheduler_config(config_path) if config_path else SchedulerConfig()
        registered = _registered_capabilities(capability_specs)
    except jsonschema.ValidationError as e:
        _exit_for(ValidationError("The scheduler configuration is invalid.", detail=e.message))
    except PipelineError as e:
        _exit_for(e)

    versions, events = _stores(store)
    capabilities: dict[JobKind, CapabilityInterface] = dict(
        _build_capabilities(sketch.get("capabilities", {}))
    )
    capabilities.update(registered)
    scheduler = JobScheduler(capabilities, config)
    pipeline = DesignPipeline(scheduler, versions, InMemoryReportStore(), events)

    with scheduler:
        try:
            _run_pipeline(
                pipeline, sketch, rule_sets, target_format, acknowledge_violations, timeout
            )
        except PipelineError as e:
            _exit_for(e)


def _run_pipeline(
    pipeline: DesignPipeline,
    sketch: Mapping[str, Any],
    rule_sets: tuple[str, ...],
    target_format: str,
    acknowledge_violations: bool,
    timeout: float,
) -> None:
    design = pipeline.create_design(
        sketch.get("owner", "cli"),
        sketch.get("sketch", ""),
        sketch.get("metadata", {}),
    )
    design_id = design.design_id
    _report(f"Design {design_id}", fg="cyan")

    pipeline.request_analysis(design_id)
    design = _settle(pipeline, design_id, "analyze", timeout)
    if design.clarification is not None:
        _report(f"Clarification needed: {design.clarification}", warn=True, fg="yellow")
        sys.exit(AmbiguousInputError.exit_code)

    pipeline.request_render(design_id, sketch.get("preferences"))
    _settle(pipeline, design_id, "render", timeout)

    for refinement in sketch.get("refinements", ()):
        pipeline.refine(design_id, refinement["modifications"], refinement.get("preferences"))
        _settle(pipeline, design_id, "refine", timeout)

    pipeline.request_compliance(design_id, rule_sets)
    _settle(pipeline, design_id, "compliance", timeout)
    report_id = pipeline.head(design_id).payload["compliance_report_id"]
    report = pipeline.get_report(report_id)
    _report(
        f"Compliance: {'compliant' if report.overall_compliant else 'NOT compliant'} "
        f"(score {report.score:.2f}, evaluated {', '.join(report.rule_sets_evaluated)})",
        warn=not report.overall_compliant,
        fg="green" if report.overall_compliant else "red",
    )
    if report.partial:
        _report(f"  not evaluated: {', '.join(report.rule_sets_missing)}", warn=True, fg="yellow")
    for v in report.violations:
        click.echo(
            click.style(
                f"  [{v.severity.value}] {v.rule_set}/{v.rule_code} "
                f"{v.element_id or '-'}: {v.description}",
                fg=_SEVERITY_COLOURS[v.severity],
            )
        )

    pipeline.request_export(design_id, target_format, acknowledge_violations)
    _settle(pipeline, design_id, "export", timeout)
    export = pipeline.head(design_id).payload["export"]
    _report(f"Exported {export['format']}: {export['artifact']}", fg="green")


@cli.command()
@click.option(
    "--store",
    required=True,
    type=click.Path(exists=True, file_okay=False),
    help="Directory holding the version store",
)
@click.option("--events", "show_events", is_flag=True, help="Also list the event trail")
@click.argument("design_id", required=False)
def history(store: str, show_events: bool, design_id: str | None) -> None:
    """List every stored version of a design, or the stored designs."""
    version_store = FilesystemVersionStore(store)
    if design_id is None:
        design_ids = version_store.design_ids()
        if not design_ids:
            click.echo(f"No designs stored in {store}")
        for stored_id in design_ids:
            stored = version_store.history(stored_id)
            click.echo(
                f"{stored_id}  versions={len(stored)}  latest={stored[-1].stage.value}"
            )
        return

    versions = version_store.history(design_id)
    if not versions:
        _exit_for(NotFoundError(f"No versions stored for design {design_id}."))

    for v in versions:
        parents = v.parent_id or "-"
        if v.merge_parent_id:
            parents += f" + {v.merge_parent_id}"
        click.echo(
            f"{v.sequence:>4}  {v.version_id}  {v.stage.value:<18}  "
            f"parent={parents}  by={v.authored_by}  {v.note}"
        )

    if show_events:
        click.echo("")
        for event in FilesystemPipelineEventStore(Path(store)).get_events(design_id):
            click.echo(
                f"{event.created_at}  {event.event_type.value:<24}  {event.summary}"
            )


@cli.command("validate-config")
@click.argument("config_file", type=click.Path(exists=True, dir_okay=False))
def validate_config(config_file: str) -> None:
    """Validate a scheduler configuration file."""
    try:
        config = load_scheduler_config(config_file)
    except json.JSONDecodeError as e:
        _exit_for(ValidationError(f"{config_file} is not valid JSON.", detail=str(e)))
    except jsonschema.ValidationError as e:
        _exit_for(
            ValidationError(
                f"Invalid configuration at {'/'.join(str(p) for p in e.absolute_path) or '<root>'}: {e.message}"
            )
        )

    _report(f"{config_file} is valid", fg="green")
    for kind in JobKind:
        k = config.for_kind(kind)
        click.echo(
            f"  {kind.value:<18} concurrency={k.concurrency} queue={k.queue_capacity} "
            f"deadline={k.deadline_seconds:g}s"
        )


if __name__ == "__main__":
    cli()
