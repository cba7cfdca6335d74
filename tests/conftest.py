"""Shared pytest fixtures for archflow tests."""

import threading
import time
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any

import pytest

from archflow.application.compliance import ComplianceAggregator
from archflow.application.config import ComplianceConfig, RetryPolicy, SchedulerConfig
from archflow.application.pipeline import DesignPipeline
from archflow.application.scheduler import JobScheduler
from archflow.domain.interfaces import CapabilityInterface
from archflow.domain.models import Job, JobKind
from archflow.domain.pipeline_event import PipelineEventType
from archflow.infrastructure.capabilities.mock import MockCapability
from archflow.infrastructure.persistence.memory import (
    InMemoryReportStore,
    InMemoryVersionStore,
)
from archflow.infrastructure.persistence.pipeline_events import (
    InMemoryPipelineEventStore,
)


class GatedCapability(CapabilityInterface):
    """Capability whose calls block until released (or cancelled)."""

    def __init__(
        self,
        result: Mapping[str, Any] | Callable[[Job], Mapping[str, Any]] | None = None,
        cancellable: bool = False,
    ):
        self.result = result if result is not None else {"artifact": "gated://done"}
        self.release = threading.Event()
        self.started = threading.Event()
        self.cancelled: list[str] = []
        self.calls = 0
        self._cancellable = cancellable

    @property
    def supports_cancel(self) -> bool:
        return self._cancellable

    def invoke(self, job: Job) -> Mapping[str, Any]:
        self.calls += 1
        self.started.set()
        self.release.wait(5.0)
        if callable(self.result):
            return self.result(job)
        return self.result

    def cancel(self, job_id: str) -> bool:
        self.cancelled.append(job_id)
        if self._cancellable:
            self.release.set()
        return self._cancellable


class GateFactory:
    """Creates gated capabilities and releases all of them on teardown."""

    def __init__(self) -> None:
        self._gates: list[GatedCapability] = []

    def __call__(self, **kwargs: Any) -> GatedCapability:
        gate = GatedCapability(**kwargs)
        self._gates.append(gate)
        return gate

    def release_all(self) -> None:
        for gate in self._gates:
            gate.release.set()


@dataclass
class PipelineHarness:
    """A started pipeline plus its stores, with shortcuts to reach each stage."""

    pipeline: DesignPipeline
    scheduler: JobScheduler
    versions: InMemoryVersionStore
    reports: InMemoryReportStore
    events: InMemoryPipelineEventStore
    capabilities: dict[JobKind, CapabilityInterface]
    timeout: float = 2.0

    def create(self) -> str:
        design = self.pipeline.create_design(
            "alice", "s3://sketches/plan.png", {"site": "lot 4"}
        )
        return design.design_id

    def analyzed(self) -> str:
        design_id = self.create()
        self.pipeline.request_analysis(design_id)
        self.pipeline.wait_idle(design_id, self.timeout)
        return design_id

    def visualized(self) -> str:
        design_id = self.analyzed()
        self.pipeline.request_render(design_id)
        self.pipeline.wait_idle(design_id, self.timeout)
        return design_id

    def checked(self, rule_sets: Iterable[str] = ()) -> str:
        design_id = self.visualized()
        self.pipeline.request_compliance(design_id, rule_sets)
        self.pipeline.wait_idle(design_id, self.timeout)
        return design_id

    def event_types(self, design_id: str) -> list[PipelineEventType]:
        return [e.event_type for e in self.events.get_events(design_id)]


def make_element(
    eid: str, type_: str = "wall", confidence: float = 0.9, **extra: Any
) -> dict[str, Any]:
    return {
        "id": eid,
        "type": type_,
        "label": extra.pop("label", f"{type_} {eid}"),
        "confidence": confidence,
        "geometry": extra.pop("geometry", {"x": 0, "y": 0, "length": 4.0}),
        **extra,
    }


def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate holds; fail the test after timeout seconds."""
    end = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > end:
            raise AssertionError("condition not met within timeout")
        time.sleep(0.005)


def render_elements(job: Job) -> Mapping[str, Any]:
    """Render result covering exactly the elements sent with the job."""
    return {
        "renders": {e["id"]: f"render://{job.job_id}/{e['id']}" for e in job.params["elements"]},
        "artifact": f"render://{job.job_id}",
    }


def compliance_capability(outcomes: Mapping[str, Any] | None = None) -> MockCapability:
    """One outcome per rule-set; unlisted rule-sets come back clean."""
    outcomes = dict(outcomes or {})

    def answer(job: Job) -> Mapping[str, Any]:
        outcome = outcomes.get(job.params["rule_set"], {"score": 0.9, "violations": []})
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return MockCapability([answer], cycle=True)


@pytest.fixture
def fast_config() -> SchedulerConfig:
    """Scheduler config with near-zero backoff and a 10ms monitor period."""
    return SchedulerConfig(
        retry=RetryPolicy(max_attempts=3, base_delay=0.001, max_delay=0.01, jitter=0.0),
        poll_interval=0.01,
    )


@pytest.fixture
def sample_elements() -> list[dict[str, Any]]:
    """Three walls and a door."""
    return [
        make_element("w1"),
        make_element("w2"),
        make_element("w3"),
        make_element("d1", type_="door", confidence=0.75),
    ]


@pytest.fixture
def version_store() -> InMemoryVersionStore:
    return InMemoryVersionStore()


@pytest.fixture
def gated() -> Iterator[GateFactory]:
    factory = GateFactory()
    yield factory
    factory.release_all()


@pytest.fixture
def make_scheduler(
    fast_config: SchedulerConfig, gated: GateFactory
) -> Iterator[Callable[..., JobScheduler]]:
    """Build started schedulers that are shut down after the test."""
    schedulers: list[JobScheduler] = []

    def factory(
        capabilities: Mapping[JobKind, CapabilityInterface],
        config: SchedulerConfig | None = None,
    ) -> JobScheduler:
        scheduler = JobScheduler(capabilities, config or fast_config).start()
        schedulers.append(scheduler)
        return scheduler

    yield factory
    gated.release_all()
    for scheduler in schedulers:
        scheduler.shutdown()


@pytest.fixture
def make_pipeline(
    fast_config: SchedulerConfig,
    gated: GateFactory,
    sample_elements: list[dict[str, Any]],
) -> Iterator[Callable[..., PipelineHarness]]:
    """Build a pipeline over in-memory stores with well-behaved default capabilities.

    Pass capabilities to override individual job kinds.
    """
    harnesses: list[PipelineHarness] = []

    def factory(
        capabilities: Mapping[JobKind, CapabilityInterface] | None = None,
        config: SchedulerConfig | None = None,
        compliance_config: ComplianceConfig | None = None,
    ) -> PipelineHarness:
        merged: dict[JobKind, CapabilityInterface] = {
            JobKind.ANALYZE: MockCapability([{"elements": sample_elements}], cycle=True),
            JobKind.RENDER: MockCapability([render_elements], cycle=True),
            JobKind.SIMULATE_LIGHTING: MockCapability(
                [{"artifact": "video://walkthrough"}], cycle=True
            ),
            JobKind.CHECK_COMPLIANCE: compliance_capability(),
            JobKind.EXPORT: MockCapability([{"artifact": "file://design.ifc"}], cycle=True),
        }
        merged.update(capabilities or {})

        scheduler = JobScheduler(merged, config or fast_config)
        versions = InMemoryVersionStore()
        reports = InMemoryReportStore()
        events = InMemoryPipelineEventStore()
        pipeline = DesignPipeline(
            scheduler,
            versions,
            reports,
            events,
            aggregator=ComplianceAggregator(scheduler, compliance_config),
        )
        scheduler.start()
        harness = PipelineHarness(pipeline, scheduler, versions, reports, events, merged)
        harnesses.append(harness)
        return harness

    yield factory
    gated.release_all()
    for harness in harnesses:
        harness.scheduler.shutdown()
