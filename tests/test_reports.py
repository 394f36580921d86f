import polars as pl
import pytest

from balance_mart.modules.coordinator import run_materialization
from balance_mart.modules.errors import ProjectDatabaseMissing
from balance_mart.modules.reports import DimTime, FactBalance, FlatBalance, RunLine, export_csv, export_excel


@pytest.fixture
def materialized(mock_project, fast_config):
    summary = run_materialization("full", as_of=20240630, db_path=mock_project.db_path, config=fast_config, print_log=False)
    return mock_project, summary


class TestReports:
    def test_flat_balance_matches_fact_balance(self, materialized):
        project, _ = materialized
        flat = FlatBalance(project.project_path).all.collect()
        fact = FactBalance(project.project_path).all.collect()
        assert flat.height == fact.height
        assert flat["account_name"].null_count() == 0

    def test_account_filter(self, materialized):
        project, _ = materialized
        one = FactBalance(project.project_path, account_id=3).all.collect()
        assert one["account_id"].unique().to_list() == [3]
        assert one["time_id"].is_sorted()

    def test_dim_time_sorted(self, materialized):
        project, _ = materialized
        times = DimTime(project.project_path).all.collect()
        assert times["time_id"].is_sorted()
        assert times["time_id"].max() == 20240630

    def test_run_lines_for_run(self, materialized):
        project, summary = materialized
        lines = RunLine(project.project_path, run_id=summary.run_id)
        assert lines.all.collect().height == len(summary.outcomes)
        assert lines.failed.collect().is_empty()

    def test_missing_database(self, tmp_path):
        with pytest.raises(ProjectDatabaseMissing):
            FactBalance(tmp_path)


class TestExports:
    def test_export_csv_full(self, materialized, tmp_path):
        project, _ = materialized
        files = export_csv(folder=tmp_path, type="full", project_path=project.project_path)
        assert sorted(f.name for f in files) == ["account.csv", "balances.csv", "calendar.csv", "run_heads.csv", "run_lines.csv"]
        balances = pl.read_csv(tmp_path / "balances.csv")
        assert balances.height == FactBalance(project.project_path).all.collect().height

    def test_export_csv_simple_default_folder(self, materialized):
        project, _ = materialized
        files = export_csv(project_path=project.project_path, type="simple")
        assert [f.name for f in files] == ["balances.csv"]
        assert files[0].parent == project.project_path / "export" / "csv"

    def test_export_excel(self, materialized):
        project, _ = materialized
        path = export_excel(type="full", project_path=project.project_path)
        assert path == project.project_path / "export" / "excel" / "balances.xlsx"
        assert path.stat().st_size > 0

    def test_unknown_export_type(self, materialized, tmp_path):
        project, _ = materialized
        with pytest.raises(ValueError):
            export_csv(folder=tmp_path, type="everything", project_path=project.project_path)
