import unittest
from datetime import datetime

from mysql_identity_fixer import (
    FixResult,
    IssueKind,
    IssueRecord,
    RepairOutcome,
    ReportCollector,
    ReportWriter,
)


def _outcome(table):
    issue = IssueRecord(IssueKind.ZERO_IDS, "id", count=2)
    return RepairOutcome(table, [issue], [FixResult(IssueKind.ZERO_IDS, True, rows_affected=2)])


class TestReportCollector(unittest.TestCase):
    def setUp(self):
        self.collector = ReportCollector()
        self.collector.add_fixed(_outcome("tblclients"))
        self.collector.add_skipped("tbllog", "no primary key")
        self.collector.add_error("tblorders", "<boom> & friends")

    def test_finalize_counts(self):
        report = self.collector.finalize("whmcs", "scan", False, datetime(2024, 5, 1), total_tables=3)
        self.assertEqual(report.fixed_tables, ["tblclients"])
        self.assertEqual(report.processed_tables, 3)
        self.assertEqual(report.issues_found, 1)
        self.assertEqual(report.rows_removed, 2)
        self.assertEqual(report.success_rate, 50.0)

    def test_table_recorded_once(self):
        with self.assertRaises(ValueError):
            self.collector.add_skipped("tblclients", "no defects")

    def test_html_escapes_and_lists_outcomes(self):
        report = self.collector.finalize("whmcs", "scan", False, datetime(2024, 5, 1), total_tables=3)
        lines = ReportWriter.summary_lines(report)
        self.assertIn("Tables Fixed: 1", lines)
        self.assertIn("  - tbllog: no primary key", lines)


def test_write_html_escapes_error_messages(tmp_path):
    collector = ReportCollector()
    collector.add_error("tblorders", "<boom> & friends")
    report = collector.finalize("whmcs", "scan", False, datetime(2024, 5, 1), total_tables=1)
    path = ReportWriter(tmp_path).write_html(report)
    content = path.read_text()
    assert "&lt;boom&gt; &amp; friends" in content
    assert "Errors Encountered (1)" in content
    assert "Successfully Fixed Tables" not in content


if __name__ == "__main__":
    unittest.main()
