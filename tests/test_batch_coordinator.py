"""
Batch coordinator tests: windows, ordering, pacing and failure containment.
"""

import asyncio

import pytest

from practice_pipeline import STATUS_FAILED, BatchCoordinator, WorkflowHistory, WorkflowResult


class RecordingOrchestrator:
    """Stands in for PracticeOrchestrator; tracks concurrency per target."""

    def __init__(self, fail=()):
        self.fail = set(fail)
        self.history = WorkflowHistory(50)
        self.active = 0
        self.peak = 0
        self.seen = []

    async def run_workflow(self, target_url, provision=None):
        self.active += 1
        self.peak = max(self.peak, self.active)
        self.seen.append(target_url)
        try:
            await asyncio.sleep(0.01)
            if target_url in self.fail:
                raise ValueError(f"cannot process {target_url}")
            result = WorkflowResult.failed(target_url, "")
            result.overall_status = "complete"
            result.error = None
            return result
        finally:
            self.active -= 1


def _targets(count):
    return [f"https://practice{i}.example.com" for i in range(count)]


@pytest.mark.unit
class TestWindows:

    def test_seven_targets_make_three_windows(self):
        coordinator = BatchCoordinator(RecordingOrchestrator(), concurrency=3)

        windows = coordinator.windows(_targets(7))

        assert [len(w) for w in windows] == [3, 3, 1]

    def test_empty_batch(self):
        coordinator = BatchCoordinator(RecordingOrchestrator(), concurrency=3)

        assert coordinator.windows([]) == []
        assert asyncio.run(coordinator.run_batch([])) == []


@pytest.mark.integration
class TestRunBatch:

    def test_results_keep_input_order(self):
        targets = _targets(7)
        coordinator = BatchCoordinator(RecordingOrchestrator(), concurrency=3, pause_seconds=0)

        results = asyncio.run(coordinator.run_batch(targets))

        assert [r.target_url for r in results] == targets

    def test_concurrency_never_exceeds_window(self):
        orchestrator = RecordingOrchestrator()
        coordinator = BatchCoordinator(orchestrator, concurrency=3, pause_seconds=0)

        asyncio.run(coordinator.run_batch(_targets(7)))

        assert orchestrator.peak == 3

    def test_pause_between_windows_only(self):
        pauses = []

        async def fake_sleep(seconds):
            pauses.append(seconds)

        coordinator = BatchCoordinator(RecordingOrchestrator(), concurrency=3, pause_seconds=2.0, sleep=fake_sleep)

        asyncio.run(coordinator.run_batch(_targets(7)))

        assert pauses == [2.0, 2.0]

    def test_failed_target_does_not_affect_others(self):
        targets = _targets(4)
        orchestrator = RecordingOrchestrator(fail={targets[1]})
        coordinator = BatchCoordinator(orchestrator, concurrency=2, pause_seconds=0)

        results = asyncio.run(coordinator.run_batch(targets))

        assert [r.overall_status for r in results] == ["complete", STATUS_FAILED, "complete", "complete"]
        assert "cannot process" in results[1].error
        assert orchestrator.history.snapshot()[0].target_url == targets[1]

    def test_real_orchestrator_invalid_url_is_contained(self, make_orchestrator):
        orchestrator = make_orchestrator()
        coordinator = BatchCoordinator(orchestrator, concurrency=3, pause_seconds=0)

        results = asyncio.run(
            coordinator.run_batch(["https://brightsmile.co.uk", "not a url"], provision=False)
        )

        assert results[0].overall_status == "complete"
        assert results[1].overall_status == STATUS_FAILED
        assert len(orchestrator.history) == 2
