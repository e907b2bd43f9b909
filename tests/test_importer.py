"""
Tests for CSV import

Duplicate detection keys on account, exact amount, a date less than seven
days away and a description that contains (or is contained in) the other.
"""

import pytest
from decimal import Decimal

from budget_manager.database import NotFoundError, ValidationError
from budget_manager.importer import descriptions_match, read_csv_rows


@pytest.fixture
def coffee(db, checking):
    return db.add_transaction({
        'type': 'expense', 'amount': '50', 'date': '2024-03-05',
        'account_id': checking['id'], 'description': 'Coffee Shop',
    })


class TestDescriptionsMatch:
    """Tests for fuzzy description matching."""

    def test_containment_ignores_case(self):
        assert descriptions_match("Coffee Shop", "coffee shop downtown")
        assert descriptions_match("COFFEE SHOP DOWNTOWN", "coffee shop")

    def test_short_descriptions_never_match(self):
        assert not descriptions_match("ATM", "ATM")
        assert not descriptions_match("", "anything")

    def test_unrelated(self):
        assert not descriptions_match("Bakery", "Coffee Shop")


class TestBulkImport:
    """Tests for TransactionImporter.bulk_import."""

    def test_rows_are_classified_by_sign(self, importer, checking):
        result = importer.bulk_import([
            {'date': '01-03-2024', 'description': 'Salary', 'amount': '2500,00'},
            {'date': '02/03/2024', 'description': 'Groceries', 'amount': '-45,10'},
        ], checking['id'])

        payload = result.to_dict()
        assert payload['success'] is True
        assert payload['importedCount'] == 2
        assert payload['duplicatedCount'] == 0
        income, expense = payload['transactions']
        assert income['type'] == "income"
        assert income['amount'] == Decimal("2500.00")
        assert income['date'] == "2024-03-01T00:00:00.000Z"
        assert expense['type'] == "expense"
        assert expense['status'] == "pending"

    def test_near_duplicate_is_flagged(self, importer, checking, coffee):
        result = importer.bulk_import([
            {'date': '07-03-2024', 'description': 'coffee shop downtown', 'amount': '-50,00'},
        ], checking['id'])

        assert result.duplicated_count == 1
        assert result.imported_count == 0
        assert result.transactions[0]['status'] == "duplicated"

    def test_outside_window_is_not_duplicate(self, importer, checking, coffee):
        result = importer.bulk_import([
            {'date': '15-03-2024', 'description': 'Coffee Shop', 'amount': '-50'},
        ], checking['id'])

        assert result.duplicated_count == 0
        assert result.transactions[0]['status'] == "pending"

    def test_different_amount_is_not_duplicate(self, importer, checking, coffee):
        result = importer.bulk_import([
            {'date': '05-03-2024', 'description': 'Coffee Shop', 'amount': '-51'},
        ], checking['id'])
        assert result.duplicated_count == 0

    def test_other_account_is_not_duplicate(self, importer, savings, coffee):
        result = importer.bulk_import([
            {'date': '05-03-2024', 'description': 'Coffee Shop', 'amount': '-50'},
        ], savings['id'])
        assert result.duplicated_count == 0

    def test_duplicates_within_one_batch(self, importer, checking):
        row = {'date': '05-03-2024', 'description': 'Streaming service', 'amount': '-9,99'}
        result = importer.bulk_import([row, dict(row)], checking['id'])

        assert [r['status'] for r in result.rows] == ["pending", "duplicated"]

    def test_bad_row_is_skipped(self, db, importer, checking):
        result = importer.bulk_import([
            {'date': '05-03-2024', 'description': 'Broken', 'amount': 'abc'},
            {'date': '06-03-2024', 'description': 'Fine', 'amount': '-1'},
            {'date': '31-02-2024', 'description': 'Bad date', 'amount': '-1'},
        ], checking['id'])

        payload = result.to_dict()
        assert payload['skippedCount'] == 2
        assert payload['importedCount'] == 1
        assert payload['rows'][0]['status'] == "skipped"
        assert "abc" in payload['rows'][0]['error']
        assert payload['rows'][1]['status'] == "pending"
        assert [t['description'] for t in db.get_transactions()] == ["Fine"]

    def test_empty_rows_rejected(self, importer, checking):
        with pytest.raises(ValidationError):
            importer.bulk_import([], checking['id'])

    def test_missing_account_rejected(self, importer):
        with pytest.raises(ValidationError):
            importer.bulk_import([{'date': '05-03-2024', 'amount': '1'}], None)

    def test_unknown_account(self, importer):
        with pytest.raises(NotFoundError):
            importer.bulk_import([{'date': '05-03-2024', 'amount': '1'}], 404)


class TestReadCsvRows:
    """Tests for reading bank export files."""

    def test_reads_date_description_amount(self, tmp_path):
        path = tmp_path / "export.csv"
        path.write_text(
            "Date,Value date,Description,Recipient,Account,Amount,Balance,Id\n"
            '05-03-2024,05-03-2024,Coffee Shop,Cafe,ACC,"-50,00",950,1\n'
            '06-03-2024,06-03-2024,Salary,Employer,ACC,"1000,00",1950,2\n'
            "07-03-2024,07-03-2024,Note,,ACC,,1950,3\n"
        )

        rows = read_csv_rows(path)

        assert rows == [
            {'date': '05-03-2024', 'description': 'Coffee Shop', 'amount': '-50,00'},
            {'date': '06-03-2024', 'description': 'Salary', 'amount': '1000,00'},
        ]

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.csv"
        path.write_text("")
        assert read_csv_rows(path) == []

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValidationError):
            read_csv_rows(tmp_path / "missing.csv")
