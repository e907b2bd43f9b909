"""
Tests for the command line scripts
"""

from budget_manager.database import BudgetDatabase
from budget_manager.scripts import import_csv, sync_tag_colors


class TestSyncTagColorsScript:
    """Tests for budget-sync-tag-colors."""

    def test_dry_run_then_apply(self, tmp_path, capsys):
        db_path = str(tmp_path / "budget.db")
        db = BudgetDatabase(db_path=db_path)
        root = db.add_tag("Home", color="#111111")
        child = db.add_tag("Rent", parent_id=root['id'])

        assert sync_tag_colors.main(["--db-path", db_path, "--dry-run"]) == 0
        assert "[DRY RUN] 1 tags" in capsys.readouterr().out
        assert db.get_tag(child['id'])['color'] == "#3b82f6"

        assert sync_tag_colors.sync_all_tag_colors(db_path) == 1
        assert db.get_tag(child['id'])['color'] == "#111111"


class TestImportCsvScript:
    """Tests for budget-import-csv."""

    def test_import_file(self, tmp_path, capsys):
        db_path = str(tmp_path / "budget.db")
        account = BudgetDatabase(db_path=db_path).add_account("Checking", "bank")
        csv_path = tmp_path / "export.csv"
        csv_path.write_text(
            "Date,Value date,Description,Recipient,Account,Amount,Balance,Id\n"
            '05-03-2024,05-03-2024,Bookshop,Books Ltd,ACC,"-12,00",988,1\n'
        )

        code = import_csv.main([str(csv_path), "--account-id", str(account['id']), "--db-path", db_path])

        assert code == 0
        assert "Imported: 1" in capsys.readouterr().out

    def test_unknown_account_fails(self, tmp_path, capsys):
        db_path = str(tmp_path / "budget.db")
        BudgetDatabase(db_path=db_path)
        csv_path = tmp_path / "export.csv"
        csv_path.write_text(
            "Date,Value date,Description,Recipient,Account,Amount,Balance,Id\n"
            '05-03-2024,05-03-2024,Bookshop,Books Ltd,ACC,"-12,00",988,1\n'
        )

        assert import_csv.main([str(csv_path), "--account-id", "9", "--db-path", db_path]) == 1
        assert "Import failed" in capsys.readouterr().err
