"""
Project folder layout.

A project is a folder holding the mart database and its exports::

    <project>/
        database/mart.db
        export/csv/
        export/excel/

When no project path is given the bundled ``project/`` folder next to the
package is used.
"""

from dataclasses import dataclass
from pathlib import Path

from balance_mart.modules.errors import ProjectDatabaseMissing

DEFAULT_PROJECT = Path(__file__).parent.parent.joinpath("project")
MART_DB = "mart.db"


@dataclass(frozen=True, slots=True)
class ProjectPaths:
    root: Path

    @property
    def database(self) -> Path:
        return self.root / "database"

    @property
    def mart_db(self) -> Path:
        return self.database / MART_DB

    @property
    def exports(self) -> Path:
        return self.root / "export"

    @property
    def csv(self) -> Path:
        return self.exports / "csv"

    @property
    def excel(self) -> Path:
        return self.exports / "excel"

    def ensure_subdir_for_write(self, subdir: Path) -> Path:
        subdir.mkdir(parents=True, exist_ok=True)
        return subdir

    def require_mart_db(self) -> Path:
        if not self.mart_db.exists():
            raise ProjectDatabaseMissing(self.mart_db)
        return self.mart_db


def get_paths(project_path: Path | None = None) -> ProjectPaths:
    return ProjectPaths(root=Path(project_path) if project_path is not None else DEFAULT_PROJECT)
