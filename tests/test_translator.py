"""
Tests for ledgerstore.translator

Covers:
- Primary key, blob and datetime translation
- Identifier quoting (brackets, backticks, reserved words, mixed case)
- Table constraints and references
- Pass-through of anything not understood
"""

from ledgerstore.translator import split_definitions, translate


class TestTypes:
    def test_autoincrement_primary_key(self):
        out = translate("CREATE TABLE notes (id INTEGER PRIMARY KEY AUTOINCREMENT, note TEXT)")
        assert out == (
            'CREATE TABLE IF NOT EXISTS "notes" (\n'
            '  "id" SERIAL PRIMARY KEY,\n'
            '  "note" TEXT\n'
            ')'
        )

    def test_plain_integer_primary_key(self):
        out = translate("CREATE TABLE t (id INTEGER PRIMARY KEY, n INTEGER)")
        assert '"id" SERIAL PRIMARY KEY' in out
        assert '"n" INTEGER' in out

    def test_primary_key_after_other_constraints(self):
        out = translate("CREATE TABLE t (id INTEGER NOT NULL PRIMARY KEY AUTOINCREMENT, v TEXT)")
        assert '"id" SERIAL NOT NULL PRIMARY KEY,' in out
        assert "AUTOINCREMENT" not in out

    def test_integer_without_primary_key_stays_integer(self):
        out = translate("CREATE TABLE t (id TEXT PRIMARY KEY, n INTEGER NOT NULL DEFAULT 0)")
        assert '"n" INTEGER NOT NULL DEFAULT 0' in out

    def test_blob_and_datetime(self):
        out = translate("CREATE TABLE files (id TEXT PRIMARY KEY, data BLOB, created DATETIME NOT NULL)")
        assert '"data" BYTEA' in out
        assert '"created" TIMESTAMP NOT NULL' in out
        assert "BLOB" not in out
        assert "DATETIME" not in out

    def test_compatible_types_pass_through(self):
        out = translate("CREATE TABLE t (a TEXT, b REAL, c NUMERIC(10, 2), d BOOLEAN DEFAULT 0, e VARCHAR(20))")
        for expected in ('"a" TEXT', '"b" REAL', '"c" NUMERIC(10, 2)', '"d" BOOLEAN DEFAULT 0', '"e" VARCHAR(20)'):
            assert expected in out

    def test_typeless_column_becomes_text(self):
        out = translate("CREATE TABLE kv (k PRIMARY KEY, v)")
        assert '"k" TEXT PRIMARY KEY' in out
        assert '"v" TEXT' in out

    def test_collate_nocase_dropped(self):
        out = translate("CREATE TABLE t (name TEXT COLLATE NOCASE NOT NULL)")
        assert '"name" TEXT NOT NULL' in out


class TestIdentifiers:
    def test_bracket_and_backtick_quotes(self):
        out = translate("CREATE TABLE [my table] (`row` TEXT, [value] BLOB)")
        assert out.startswith('CREATE TABLE IF NOT EXISTS "my table" (')
        assert '"row" TEXT' in out
        assert '"value" BYTEA' in out

    def test_mixed_case_preserved(self):
        out = translate("CREATE TABLE transactions (id TEXT PRIMARY KEY, isParent INTEGER DEFAULT 0)")
        assert '"isParent" INTEGER DEFAULT 0' in out

    def test_string_literals_untouched(self):
        out = translate("CREATE TABLE t (tag TEXT DEFAULT '[none]')")
        assert "DEFAULT '[none]'" in out

    def test_existing_if_not_exists_not_duplicated(self):
        out = translate('CREATE TABLE IF NOT EXISTS "t" ("id" TEXT)')
        assert out.count("IF NOT EXISTS") == 1


class TestConstraints:
    def test_table_level_keys(self):
        out = translate(
            "CREATE TABLE links (a TEXT, b TEXT, PRIMARY KEY (a, b), "
            "FOREIGN KEY (b) REFERENCES other(id), UNIQUE (a))"
        )
        assert 'PRIMARY KEY ("a", "b")' in out
        assert 'FOREIGN KEY ("b") REFERENCES "other" ("id")' in out
        assert 'UNIQUE ("a")' in out

    def test_column_reference(self):
        out = translate("CREATE TABLE t (acct TEXT REFERENCES accounts(id))")
        assert '"acct" TEXT REFERENCES "accounts" ("id")' in out

    def test_check_constraint_kept(self):
        out = translate("CREATE TABLE t (n INTEGER, CHECK (n > 0))")
        assert "CHECK (n > 0)" in out

    def test_without_rowid_dropped(self):
        out = translate("CREATE TABLE t (k TEXT PRIMARY KEY, v TEXT) WITHOUT ROWID")
        assert "ROWID" not in out
        assert out.endswith(")")


class TestPassThrough:
    def test_empty(self):
        assert translate("") == ""
        assert translate("   ") == ""

    def test_unrecognised_statement_unchanged(self):
        sql = "CREATE INDEX idx ON t (a)"
        assert translate(sql) == sql

    def test_create_table_as_select_unchanged(self):
        sql = "CREATE TABLE copy AS SELECT * FROM t"
        assert translate(sql) == sql


class TestSplitDefinitions:
    def test_respects_parens_and_quotes(self):
        parts = split_definitions("a TEXT, b NUMERIC(10, 2), c TEXT DEFAULT 'x,y', \"d,e\" TEXT")
        assert parts == ["a TEXT", "b NUMERIC(10, 2)", "c TEXT DEFAULT 'x,y'", '"d,e" TEXT']

    def test_escaped_quotes(self):
        parts = split_definitions("a TEXT DEFAULT 'it''s, fine', b TEXT")
        assert parts == ["a TEXT DEFAULT 'it''s, fine'", "b TEXT"]
