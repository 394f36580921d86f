"""
End-to-end tests for the ``bmart`` command line: init, mock, build,
materialize, audit and export against a temporary project.
"""

import sqlite3

import pytest

from balance_mart.cli import main


def _run(*argv: str) -> int:
    with pytest.raises(SystemExit) as excinfo:
        main(list(argv))
    return excinfo.value.code


@pytest.fixture
def cli_project(tmp_path):
    project = tmp_path / "project"
    source = tmp_path / "source.db"
    assert _run("init", "--project", str(project)) == 0
    assert _run("mock", "--source", str(source)) == 0
    assert _run("build", "--project", str(project), "--source", str(source), "--as-of", "2024-06-30", "--quiet") == 0
    return project


class TestCli:
    def test_full_then_incremental(self, cli_project):
        project = str(cli_project)
        assert _run("materialize", "--project", project, "--mode", "full", "--as-of", "20240331", "--workers", "2", "--quiet") == 0
        assert _run("materialize", "--project", project, "--mode", "incremental", "--as-of", "20240630", "--quiet") == 0
        conn = sqlite3.connect(cli_project / "database" / "mart.db")
        try:
            watermarks = {row[0] for row in conn.execute("SELECT time_id FROM BalanceWatermark")}
            runs = conn.execute("SELECT mode FROM RunHead ORDER BY updatetime").fetchall()
        finally:
            conn.close()
        assert watermarks == {20240630}
        assert runs == [("full",), ("incremental",)]

    def test_audit_and_export(self, cli_project):
        project = str(cli_project)
        assert _run("materialize", "--project", project, "--mode", "full", "--as-of", "20240630", "--quiet") == 0
        assert _run("audit", "--project", project) == 0
        assert _run("export", "--project", project, "--format", "csv", "--type", "full") == 0
        assert (cli_project / "export" / "csv" / "balances.csv").exists()

    def test_audit_reports_problems(self, cli_project):
        project = str(cli_project)
        _run("materialize", "--project", project, "--mode", "full", "--as-of", "20240630", "--quiet")
        conn = sqlite3.connect(cli_project / "database" / "mart.db")
        conn.execute("DELETE FROM FactBalance WHERE account_id = 1 AND time_id = 20240315")
        conn.commit()
        conn.close()
        assert _run("audit", "--project", project) == 1

    def test_failed_account_exits_non_zero(self, cli_project, capsys):
        project = str(cli_project)
        assert _run("materialize", "--project", project, "--mode", "full", "--as-of", "20240730", "--quiet") == 1
        assert "CalendarGapError" in capsys.readouterr().err

    def test_missing_project_database(self, tmp_path, capsys):
        assert _run("materialize", "--project", str(tmp_path / "nowhere"), "--mode", "full") == 1
        assert "ProjectDatabaseMissing" in capsys.readouterr().err

    def test_concurrent_run_exits_non_zero(self, cli_project, capsys):
        from balance_mart.modules.sink import SqliteFactSink

        SqliteFactSink(cli_project / "database" / "mart.db").acquire_run_lock("other-run", "full", [1])
        assert _run("materialize", "--project", str(cli_project), "--mode", "full", "--as-of", "20240131", "--quiet") == 1
        assert "ConcurrentRunError" in capsys.readouterr().err

    def test_invalid_as_of_is_a_usage_error(self, cli_project):
        assert _run("materialize", "--project", str(cli_project), "--mode", "full", "--as-of", "2024-02-30") == 2

    def test_mode_is_required(self, cli_project):
        assert _run("materialize", "--project", str(cli_project)) == 2

    def test_ctrl_c_cancels_and_records_run(self, cli_project, capsys, monkeypatch):
        import signal

        from balance_mart.modules import coordinator
        from balance_mart.modules.sink import SqliteFactSink

        class SigintSink(SqliteFactSink):
            sent = False

            def upsert_balance_facts(self, account_id, facts, run_id=None, reset=False):
                written = super().upsert_balance_facts(account_id, facts, run_id=run_id, reset=reset)
                if not SigintSink.sent:
                    SigintSink.sent = True
                    signal.raise_signal(signal.SIGINT)
                return written

        monkeypatch.setattr(coordinator, "SqliteFactSink", SigintSink)
        argv = ("materialize", "--project", str(cli_project), "--mode", "full", "--as-of", "20240131", "--workers", "1", "--no-turbo", "--quiet")
        assert _run(*argv) == 1
        assert "Cancelled: 4 account(s)" in capsys.readouterr().err
        conn = sqlite3.connect(cli_project / "database" / "mart.db")
        try:
            head = conn.execute("SELECT success_count, cancelled_count FROM RunHead").fetchone()
        finally:
            conn.close()
        assert head == (1, 4)
