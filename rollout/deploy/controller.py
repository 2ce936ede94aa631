"""Rolling deployment controller.

One supervisor per service drives a DeploymentRun through
``initializing -> scaling <-> draining -> steady_state`` or, once the circuit
breaker trips, ``rolling_back -> rolled_back | failed``. Each tick it polls
health concurrently, applies the results, drains what has to go, stops what
has drained, and launches the next batch. The running count never leaves
``[min_running, max_running]`` through any action of the controller.
"""

from concurrent.futures import ThreadPoolExecutor
import logging
import threading
import time
from typing import Callable

from rollout.deploy.capacity import CapacityBounds, capacity_bounds
from rollout.deploy.health import HealthProber, retry_transient
from rollout.deploy.models import (
    Batch,
    DeploymentRun,
    HealthCheckPolicy,
    Instance,
    InstanceState,
    Outcome,
    RunEvent,
    RunState,
    ServiceSpec,
    TaskTemplate,
    TripReason,
)
from rollout.deploy.runtime import ClusterRuntime, HealthStatus, LoadBalancer
from rollout.errors import (
    CircuitBreakerTripped,
    ConfigurationError,
    DeploymentCancelled,
    DeploymentFailed,
    DeploymentInProgressError,
    DeploymentTimeout,
    TransientError,
)

LOG = logging.getLogger(__name__)

# Launch-and-register attempts per slot before the slot counts as unhealthy.
MAX_SLOT_ATTEMPTS = 3


class _Tripped(Exception):
    def __init__(self, reason: TripReason) -> None:
        super().__init__(reason.value)
        self.reason = reason


def validate_spec(spec: ServiceSpec, previous: ServiceSpec | None = None) -> CapacityBounds:
    """Check a ServiceSpec before a run starts and return its capacity bounds."""
    errors = []
    if spec.desired_count < 1:
        errors.append("desired_count must be at least 1")
    if not 0 <= spec.min_healthy_percent <= 100:
        errors.append("min_healthy_percent must be between 0 and 100")
    if spec.max_healthy_percent < 100:
        errors.append("max_healthy_percent must be at least 100")
    if spec.deployment.batch_size < 1:
        errors.append("batch_size must be at least 1")
    if spec.rollback.threshold < 1:
        errors.append("circuit breaker threshold must be at least 1")
    if spec.health.healthy_threshold < 1 or spec.health.unhealthy_threshold < 1:
        errors.append("health thresholds must be at least 1")
    if not spec.template.image:
        errors.append("task template has no image")
    bounds = capacity_bounds(spec.desired_count, spec.min_healthy_percent, spec.max_healthy_percent)
    if bounds.max_running <= bounds.min_running:
        errors.append(
            f"no room to replace instances: max_running {bounds.max_running} <= min_running {bounds.min_running}"
        )
    if previous is not None and previous.template.version == spec.template.version:
        errors.append(f"template {spec.template.version} is already running")
    if errors:
        raise ConfigurationError(f"invalid service spec for {spec.service_name!r}: " + "; ".join(errors))
    return bounds


class DeploymentController:
    def __init__(
        self,
        runtime: ClusterRuntime,
        load_balancer: LoadBalancer,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        on_change: Callable[[DeploymentRun], None] | None = None,
        max_workers: int = 8,
    ) -> None:
        self.runtime = runtime
        self.load_balancer = load_balancer
        self.clock = clock
        self.sleep = sleep
        self.on_change = on_change
        self.max_workers = max_workers
        self._guard = threading.Lock()
        self._active: dict[str, DeploymentRun] = {}
        self._runs: dict[str, DeploymentRun] = {}
        self._threads: dict[str, threading.Thread] = {}
        self._policies: dict[str, HealthCheckPolicy] = {}
        self._last_failure: dict[str, TripReason] = {}

    # --- public API ---

    def deploy(self, spec: ServiceSpec, previous: ServiceSpec | None = None) -> DeploymentRun:
        """Run a deployment to completion; returns the run or raises per its outcome."""
        run = self._begin(spec, previous)
        self._execute(run, spec, previous)
        return self._result(run)

    def start(self, spec: ServiceSpec, previous: ServiceSpec | None = None) -> DeploymentRun:
        """Start a deployment on a background thread and return its run at once."""
        run = self._begin(spec, previous)
        thread = threading.Thread(
            target=self._execute, args=(run, spec, previous), name=f"deploy-{spec.service_name}", daemon=True
        )
        self._threads[run.id] = thread
        thread.start()
        return run

    def wait(self, run_id: str, timeout: float | None = None) -> DeploymentRun:
        thread = self._threads.get(run_id)
        if thread is not None:
            thread.join(timeout)
            if thread.is_alive():
                raise TimeoutError(f"run {run_id} still in progress")
        return self._result(self._runs[run_id])

    def cancel(self, service_name: str) -> bool:
        """Request cancellation of the active run; it rolls back. False if nothing is running."""
        with self._guard:
            run = self._active.get(service_name)
        if run is None:
            return False
        LOG.info("cancellation requested for %s (%s)", service_name, run.id)
        run.cancel_event.set()
        return True

    def active_run(self, service_name: str) -> DeploymentRun | None:
        with self._guard:
            return self._active.get(service_name)

    def get_run(self, run_id: str) -> DeploymentRun:
        return self._runs[run_id]

    # --- run lifecycle ---

    def _begin(self, spec: ServiceSpec, previous: ServiceSpec | None) -> DeploymentRun:
        validate_spec(spec, previous)
        with self._guard:
            active = self._active.get(spec.service_name)
            if active is not None:
                raise DeploymentInProgressError(spec.service_name, active.id)
            run = DeploymentRun(
                service_name=spec.service_name,
                old_version=previous.template.version if previous else None,
                new_version=spec.template.version,
                started_at=self.clock(),
                last_stable=previous,
            )
            self._active[spec.service_name] = run
            self._runs[run.id] = run
            self._policies[run.id] = spec.health
        LOG.info(
            "run %s: deploying %s %s -> %s",
            run.id, spec.service_name, run.old_version or "(none)", run.new_version,
        )
        return run

    def _execute(self, run: DeploymentRun, spec: ServiceSpec, previous: ServiceSpec | None) -> None:
        try:
            self._protocol(run, spec, previous)
        except Exception as e:
            LOG.exception("run %s: aborted", run.id)
            run.error = f"{type(e).__name__}: {e}"
            self._finish(run, RunState.FAILED, Outcome.FAILED, str(e))
        finally:
            with self._guard:
                if self._active.get(spec.service_name) is run:
                    del self._active[spec.service_name]
                # only the run itself outlives its execution
                self._policies.pop(run.id, None)
                self._last_failure.pop(run.id, None)
                self._threads.pop(run.id, None)

    def _result(self, run: DeploymentRun) -> DeploymentRun:
        if run.outcome == Outcome.SUCCEEDED:
            return run
        if run.outcome == Outcome.ROLLED_BACK:
            reason = run.trip_reason or TripReason.CIRCUIT_BREAKER
            message = f"deployment of {run.service_name} {run.new_version} rolled back ({reason.value})"
            if run.error:
                message += f": {run.error}"
            if reason == TripReason.CANCELLED:
                raise DeploymentCancelled(message, run=run, last_stable=run.last_stable)
            if reason in (TripReason.TIMEOUT, TripReason.BATCH_TIMEOUT):
                raise DeploymentTimeout(message, run=run, last_stable=run.last_stable)
            raise CircuitBreakerTripped(message, run=run, last_stable=run.last_stable)
        detail = run.error or (run.trip_reason.value if run.trip_reason else "unknown")
        raise DeploymentFailed(f"deployment of {run.service_name} {run.new_version} failed: {detail}", run=run)

    def _protocol(self, run: DeploymentRun, spec: ServiceSpec, previous: ServiceSpec | None) -> None:
        self._adopt(run)
        bounds = capacity_bounds(spec.desired_count, spec.min_healthy_percent, spec.max_healthy_percent)
        if previous is None:
            bounds = CapacityBounds(min_running=0, max_running=bounds.max_running)
        self._transition(run, RunState.SCALING)
        try:
            self._converge(
                run, spec, spec.template, spec.desired_count, bounds,
                batch_size=spec.deployment.batch_size, breaker=True,
            )
        except _Tripped as trip:
            run.trip_reason = trip.reason
            LOG.warning("run %s: circuit breaker tripped (%s)", run.id, trip.reason.value)
            self._roll_back(run, spec, previous, trip.reason)
            return
        except Exception as e:
            # any other failure rolls back like a trip
            LOG.exception("run %s: forward scaling failed", run.id)
            run.error = f"{type(e).__name__}: {e}"
            run.trip_reason = TripReason.ERROR
            self._roll_back(run, spec, previous, TripReason.ERROR)
            return
        self._finish(run, RunState.STEADY_STATE, Outcome.SUCCEEDED, "all instances healthy on new template")

    def _roll_back(
        self, run: DeploymentRun, spec: ServiceSpec, previous: ServiceSpec | None, reason: TripReason
    ) -> None:
        if previous is None:
            self._finish(run, RunState.FAILED, Outcome.FAILED, "no previous template to roll back to")
            return
        if not spec.rollback.enabled and reason != TripReason.CANCELLED:
            self._finish(run, RunState.FAILED, Outcome.FAILED, "rollback disabled, forward scaling halted")
            return
        self._transition(run, RunState.ROLLING_BACK, f"restoring {previous.template.version}")
        bounds = capacity_bounds(previous.desired_count, previous.min_healthy_percent, previous.max_healthy_percent)
        try:
            self._converge(
                run, previous, previous.template, previous.desired_count, bounds,
                batch_size=previous.desired_count, breaker=False,
            )
        except _Tripped as trip:
            self._finish(run, RunState.FAILED, Outcome.FAILED, f"rollback did not converge ({trip.reason.value})")
            return
        self._finish(run, RunState.ROLLED_BACK, Outcome.ROLLED_BACK, f"restored {previous.template.version}")

    def _adopt(self, run: DeploymentRun) -> None:
        now = self.clock()
        for handle in self.runtime.list_instances(run.service_name):
            instance = Instance(handle=handle, state=InstanceState.HEALTHY, launched_at=now, registered=True)
            run.instances[handle.instance_id] = instance
            self._record(run, handle.instance_id, None, InstanceState.HEALTHY.value, "adopted running instance")

    # --- convergence loop ---

    def _converge(
        self,
        run: DeploymentRun,
        spec: ServiceSpec,
        target: TaskTemplate,
        desired: int,
        bounds: CapacityBounds,
        batch_size: int,
        breaker: bool,
    ) -> None:
        """Drive the running set to ``desired`` healthy instances of ``target``.

        Raises _Tripped when the breaker trips (forward only), on cancellation
        (forward only) or when the phase deadline passes.
        """
        deadline = self.clock() + spec.deployment.timeout_seconds
        prober = HealthProber(self.load_balancer, spec.health, self.sleep)
        while True:
            self._poll(run, spec, prober, breaker)
            self._expire_batches(run, breaker)
            if breaker:
                self._check_breaker(run, spec)
                if run.cancel_requested:
                    raise _Tripped(TripReason.CANCELLED)
            self._drain(run, target, desired, bounds)
            self._stop_drained(run, spec, bounds)
            if self._converged(run, target, desired):
                return
            self._launch(run, spec, target, desired, bounds, batch_size, breaker)
            if breaker:
                self._check_breaker(run, spec)
            self._notify(run)
            if self.clock() >= deadline:
                raise _Tripped(TripReason.TIMEOUT)
            self.sleep(spec.health.interval_seconds)

    def _check_breaker(self, run: DeploymentRun, spec: ServiceSpec) -> None:
        if run.unhealthy_count >= spec.rollback.threshold:
            raise _Tripped(self._last_failure.get(run.id, TripReason.CIRCUIT_BREAKER))

    def _count_failure(self, run: DeploymentRun, reason: TripReason) -> None:
        run.unhealthy_count += 1
        # the failure that reaches the threshold names the trip
        self._last_failure[run.id] = reason

    def _poll(self, run: DeploymentRun, spec: ServiceSpec, prober: HealthProber, breaker: bool) -> None:
        probed = [
            i for i in run.instances.values()
            if i.registered and i.state in (InstanceState.LAUNCHING, InstanceState.HEALTHY)
        ]
        if not probed:
            return
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(probed))) as pool:
            results = list(pool.map(prober.probe, [i.handle for i in probed]))
        for instance, status in zip(probed, results):
            self._apply_health(run, spec, instance, status, breaker)

    def _apply_health(
        self, run: DeploymentRun, spec: ServiceSpec, instance: Instance, status: HealthStatus | None, breaker: bool
    ) -> None:
        if status is None:
            return
        if status == HealthStatus.PASSING:
            instance.pass_streak += 1
            instance.fail_streak = 0
            if instance.state == InstanceState.LAUNCHING and instance.pass_streak >= spec.health.healthy_threshold:
                self._set_instance(run, instance, InstanceState.HEALTHY, "passed health checks")
            return
        instance.fail_streak += 1
        instance.pass_streak = 0
        if instance.fail_streak >= spec.health.unhealthy_threshold:
            self._set_instance(run, instance, InstanceState.UNHEALTHY, "failed health checks")
            if breaker and instance.version == run.new_version:
                self._count_failure(run, TripReason.CIRCUIT_BREAKER)

    def _expire_batches(self, run: DeploymentRun, breaker: bool) -> None:
        now = self.clock()
        for batch in run.batches:
            if batch.completed:
                continue
            members = [run.instances[i] for i in batch.instance_ids if i in run.instances]
            launching = [i for i in members if i.state == InstanceState.LAUNCHING]
            if launching and now >= batch.deadline:
                for instance in launching:
                    self._set_instance(run, instance, InstanceState.UNHEALTHY, f"batch {batch.number} timed out")
                    if breaker and instance.version == run.new_version:
                        self._count_failure(run, TripReason.BATCH_TIMEOUT)
                launching = []
            if not launching:
                batch.completed = True

    def _drain(self, run: DeploymentRun, target: TaskTemplate, desired: int, bounds: CapacityBounds) -> None:
        live = [i for i in run.instances.values() if i.state != InstanceState.STOPPED]
        candidates = [
            i for i in live
            if i.state == InstanceState.UNHEALTHY
            or (i.state == InstanceState.LAUNCHING and i.version != target.version)
        ]
        for instance in candidates:
            self._begin_drain(run, instance)

        healthy = [i for i in live if i.state == InstanceState.HEALTHY]
        healthy_count = len(healthy)
        for instance in sorted(healthy, key=lambda i: i.launched_at):
            if instance.version == target.version:
                continue
            if healthy_count - 1 < bounds.min_running:
                break
            if self._begin_drain(run, instance):
                healthy_count -= 1

        surplus = [i for i in healthy if i.version == target.version and i.state == InstanceState.HEALTHY]
        for instance in surplus[desired:]:
            if healthy_count - 1 < bounds.min_running:
                break
            if self._begin_drain(run, instance):
                healthy_count -= 1

    def _begin_drain(self, run: DeploymentRun, instance: Instance) -> bool:
        if instance.registered:
            try:
                self._retry(lambda: self.load_balancer.deregister_target(instance.handle),
                            f"deregister {instance.instance_id}", run)
            except TransientError:
                # left in place; the next tick tries again
                return False
            instance.registered = False
        instance.drain_started_at = self.clock()
        if run.state == RunState.SCALING:
            self._transition(run, RunState.DRAINING)
        self._set_instance(run, instance, InstanceState.DRAINING, "deregistered from load balancer")
        return True

    def _stop_drained(self, run: DeploymentRun, spec: ServiceSpec, bounds: CapacityBounds) -> None:
        now = self.clock()
        for instance in list(run.instances.values()):
            if instance.state != InstanceState.DRAINING:
                continue
            if now - (instance.drain_started_at or now) < spec.deployment.drain_grace_seconds:
                continue
            if not bounds.can_stop(len(run.running())):
                return
            self._stop(run, instance, "drained")

    def _stop(self, run: DeploymentRun, instance: Instance, message: str) -> None:
        self._retry(lambda: self.runtime.stop_instance(instance.handle), f"stop {instance.instance_id}", run)
        self._set_instance(run, instance, InstanceState.STOPPED, message)

    def _converged(self, run: DeploymentRun, target: TaskTemplate, desired: int) -> bool:
        running = run.running()
        return len(running) == desired and all(
            i.version == target.version and i.state == InstanceState.HEALTHY for i in running
        )

    def _launch(
        self,
        run: DeploymentRun,
        spec: ServiceSpec,
        target: TaskTemplate,
        desired: int,
        bounds: CapacityBounds,
        batch_size: int,
        breaker: bool,
    ) -> None:
        targets = [i for i in run.running() if i.version == target.version]
        if any(i.state == InstanceState.LAUNCHING for i in targets):
            return
        active = sum(1 for i in targets if i.state in (InstanceState.LAUNCHING, InstanceState.HEALTHY))
        count = min(batch_size, desired - active, bounds.max_running - len(run.running()))
        if count <= 0:
            return
        now = self.clock()
        batch = Batch(
            number=len(run.batches) + 1,
            template_version=target.version,
            started_at=now,
            deadline=now + spec.deployment.batch_timeout_seconds,
        )
        run.batches.append(batch)
        if run.state == RunState.DRAINING:
            self._transition(run, RunState.SCALING)
        LOG.info("run %s: batch %d launching %d x %s", run.id, batch.number, count, target.version)
        for _ in range(count):
            if not self._fill_slot(run, target, batch, bounds) and breaker and target.version == run.new_version:
                self._record(run, None, run.state.value, run.state.value, f"batch {batch.number}: slot exhausted")
                self._count_failure(run, TripReason.CIRCUIT_BREAKER)

    def _fill_slot(self, run: DeploymentRun, target: TaskTemplate, batch: Batch, bounds: CapacityBounds) -> bool:
        for attempt in range(1, MAX_SLOT_ATTEMPTS + 1):
            if not bounds.can_launch(len(run.running())):
                return False
            try:
                handle = self._retry(lambda: self.runtime.launch_instance(target), f"launch {target.version}", run)
            except TransientError:
                continue
            except Exception as e:
                LOG.warning("run %s: launch of %s failed: %s", run.id, target.version, e)
                return False
            instance = Instance(handle=handle, state=InstanceState.LAUNCHING, launched_at=self.clock(),
                                batch=batch.number)
            run.instances[handle.instance_id] = instance
            batch.instance_ids.append(handle.instance_id)
            self._record(
                run, handle.instance_id, None, InstanceState.LAUNCHING.value, f"launched in batch {batch.number}"
            )
            try:
                self._retry(lambda: self.load_balancer.register_target(handle),
                            f"register {handle.instance_id}", run)
            except Exception as e:
                LOG.warning("run %s: registration of %s failed (attempt %d/%d): %s",
                            run.id, handle.instance_id, attempt, MAX_SLOT_ATTEMPTS, e)
                self._stop(run, instance, f"registration failed: {e}")
                continue
            instance.registered = True
            return True
        return False

    # --- bookkeeping ---

    def _retry(self, fn: Callable, what: str, run: DeploymentRun):
        policy = self._policies[run.id]
        return retry_transient(
            fn, f"run {run.id}: {what}", policy.transient_retries, policy.retry_backoff_seconds, self.sleep
        )

    def _set_instance(self, run: DeploymentRun, instance: Instance, state: InstanceState, message: str) -> None:
        previous = instance.state
        instance.state = state
        self._record(run, instance.instance_id, previous.value, state.value, message)

    def _transition(self, run: DeploymentRun, state: RunState, message: str = "") -> None:
        previous = run.state
        run.state = state
        self._record(run, None, previous.value, state.value, message)
        LOG.info("run %s: %s -> %s %s", run.id, previous.value, state.value, message)
        self._notify(run)

    def _finish(self, run: DeploymentRun, state: RunState, outcome: Outcome, message: str) -> None:
        run.outcome = outcome
        run.finished_at = self.clock()
        self._transition(run, state, message)

    def _record(
        self, run: DeploymentRun, instance_id: str | None, from_state: str | None, to_state: str, message: str
    ) -> None:
        run.log.append(RunEvent(self.clock(), instance_id, from_state, to_state, message))
        if instance_id is not None:
            LOG.debug("run %s: %s %s -> %s %s", run.id, instance_id, from_state, to_state, message)

    def _notify(self, run: DeploymentRun) -> None:
        if self.on_change is not None:
            self.on_change(run)
