"""
Per-workflow log capture tests.
"""

import asyncio
import logging

import pytest

from log_capture import WorkflowLogCapture


@pytest.fixture(autouse=True)
def _info_logging():
    root = logging.getLogger()
    previous = root.level
    root.setLevel(logging.INFO)
    yield
    root.setLevel(previous)


@pytest.mark.unit
class TestWorkflowLogCapture:

    def test_collects_lines_inside_block_only(self):
        logging.info("before")
        with WorkflowLogCapture("wf-1") as capture:
            logging.info("inside %s", "workflow")
        logging.info("after")

        assert len(capture.lines) == 1
        assert capture.lines[0].endswith("| INFO | inside workflow")

    def test_keeps_newest_lines(self):
        with WorkflowLogCapture("wf-2", max_lines=3) as capture:
            for i in range(10):
                logging.info("line %d", i)

        assert [line.rsplit("| ", 1)[-1] for line in capture.lines] == ["line 7", "line 8", "line 9"]

    def test_zero_lines_disables_capture(self):
        with WorkflowLogCapture("wf-3", max_lines=0) as capture:
            logging.info("ignored")

        assert capture.lines == []

    def test_concurrent_workflows_are_separated(self):
        async def run(name):
            with WorkflowLogCapture(name) as capture:
                for i in range(3):
                    logging.info("%s step %d", name, i)
                    await asyncio.sleep(0)
                await asyncio.to_thread(logging.info, "%s from thread", name)
            return capture.lines

        async def main():
            return await asyncio.gather(run("alpha"), run("beta"))

        alpha, beta = asyncio.run(main())

        assert len(alpha) == 4 and all("alpha" in line for line in alpha)
        assert len(beta) == 4 and all("beta" in line for line in beta)

    def test_exception_propagates(self):
        with pytest.raises(RuntimeError):
            with WorkflowLogCapture("wf-4") as capture:
                logging.warning("about to fail")
                raise RuntimeError("boom")

        assert any("about to fail" in line for line in capture.lines)
