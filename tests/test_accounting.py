import pathlib
import sys
import unittest
from decimal import Decimal


ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from ralph_loop import accounting
from ralph_loop.engines import COST_MODE, DURATION_MODE, NormalizedResult


class EstimateTests(unittest.TestCase):
    def test_estimate_cost_rates(self):
        self.assertEqual(accounting.estimate_cost(1_000_000, 1_000_000), Decimal("18.0000"))
        self.assertEqual(accounting.estimate_cost(0, 0), Decimal("0.0000"))

    def test_format_duration(self):
        self.assertEqual(accounting.format_duration_ms(65_000), "1m 5s")
        self.assertEqual(accounting.format_duration_ms(9_999), "9s")


class RunSessionTests(unittest.TestCase):
    def test_cost_mode_accumulates_tokens_and_cost(self):
        session = accounting.RunSession(engine="claude", accounting_mode=COST_MODE)
        session.record(NormalizedResult("a", 100, 20, Decimal("0.10"), 5000))
        session.record(NormalizedResult("b", 50, 5, Decimal("0.05"), 5000))
        self.assertEqual(session.input_tokens, 150)
        self.assertEqual(session.output_tokens, 25)
        self.assertEqual(session.actual_cost, Decimal("0.15"))
        self.assertEqual(session.duration_ms, 0)

    def test_duration_mode_ignores_cost(self):
        session = accounting.RunSession(engine="cursor", accounting_mode=DURATION_MODE)
        session.record(NormalizedResult("a", cost=Decimal("9"), duration_ms=1500))
        session.record(NormalizedResult("b", duration_ms=2500))
        self.assertEqual(session.duration_ms, 4000)
        self.assertEqual(session.actual_cost, Decimal("0"))

    def test_unknown_mode_rejected(self):
        with self.assertRaises(ValueError):
            accounting.RunSession(engine="x", accounting_mode="tokens")

    def test_add_branch_dedupes(self):
        session = accounting.RunSession(engine="claude")
        session.add_branch("ralph/a")
        session.add_branch("ralph/a")
        session.add_branch("")
        self.assertEqual(session.branches, ["ralph/a"])


class RenderSummaryTests(unittest.TestCase):
    def _report(self, **kwargs):
        session = accounting.RunSession(engine=kwargs.pop("engine", "claude"), accounting_mode=kwargs.pop("mode", COST_MODE))
        for key, value in kwargs.pop("session", {}).items():
            setattr(session, key, value)
        return session.summary(stop_reason="max iterations reached", **kwargs)

    def test_nothing_to_do(self):
        text = accounting.render_summary(self._report(pending=0, done=0))
        self.assertIn("No tasks pending. Nothing to do.", text)

    def test_complete_with_estimate(self):
        report = self._report(
            pending=0,
            done=2,
            session={"tasks_completed": 2, "iteration": 2, "input_tokens": 1000, "output_tokens": 100},
        )
        text = accounting.render_summary(report)
        self.assertIn("PRD complete! Finished 2 task(s).", text)
        self.assertIn("Completed: 2 | Remaining: 0", text)
        self.assertIn("Total tokens:  1100", text)
        self.assertIn("Est. cost:     $0.0045", text)

    def test_actual_cost_preferred(self):
        report = self._report(pending=1, done=1, session={"tasks_completed": 1, "actual_cost": Decimal("0.42")})
        text = accounting.render_summary(report)
        self.assertIn("Stopped: max iterations reached.", text)
        self.assertIn("Actual cost:   $0.42", text)
        self.assertNotIn("Est. cost", text)

    def test_duration_mode_summary(self):
        report = self._report(engine="cursor", mode=DURATION_MODE, pending=0, done=1, session={"duration_ms": 125_000})
        text = accounting.render_summary(report)
        self.assertIn("Token usage not available", text)
        self.assertIn("Total API time: 2m 5s", text)
        self.assertNotIn("Input tokens", text)

    def test_branches_and_prs_listed(self):
        report = self._report(
            pending=0,
            done=1,
            session={"branches": ["ralph/add-login-form"], "pull_requests": ["https://github.com/acme/repo/pull/1"]},
        )
        text = accounting.render_summary(report)
        self.assertIn("  - ralph/add-login-form", text)
        self.assertIn("  - https://github.com/acme/repo/pull/1", text)


if __name__ == "__main__":
    unittest.main()
