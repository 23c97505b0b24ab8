import csv
import json
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import oracledb

import ddl_validator as dv
from ddl_normalizer import SEQUENCE_SENTINEL


class FakeDdlSource:
    """内存中的 DDL 源，raise_for 中的对象取 DDL 时抛异常。"""

    def __init__(self, ddls, raise_for=()):
        self.ddls = ddls
        self.raise_for = set(raise_for)
        self.calls = []

    def get_ddl(self, item):
        self.calls.append(item)
        if item in self.raise_for:
            raise RuntimeError("connection reset")
        ddl = self.ddls.get(item)
        if ddl is None:
            return dv.DdlFetch(None, "ORA-31603: object not found")
        return dv.DdlFetch(ddl)


class FakeLob:
    def __init__(self, text):
        self.text = text

    def read(self):
        return self.text


class FakeCursor:
    def __init__(self, rows=None, error=None):
        self.rows = rows or []
        self.error = error
        self.executed = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.executed.append((sql, params))
        if self.error is not None:
            raise self.error

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def __iter__(self):
        return iter(self.rows)


class FakeConnection:
    def __init__(self, cursor):
        self._cursor = cursor

    def cursor(self):
        return self._cursor


EMP = dv.ObjectIdentity("HR", "EMP", "TABLE")
DEPT = dv.ObjectIdentity("HR", "DEPT", "TABLE")
EMP_SEQ = dv.ObjectIdentity("HR", "EMP_SEQ", "SEQUENCE")
PKG = dv.ObjectIdentity("HR", "PKG_PAYROLL", "PACKAGE BODY")
GHOST = dv.ObjectIdentity("HR", "GHOST", "VIEW")


class TestClassifyDdlPair(unittest.TestCase):
    def test_missing_states(self):
        self.assertEqual(dv.classify_ddl_pair(None, None, "VIEW"), dv.STATUS_MISSING_IN_BOTH)
        self.assertEqual(dv.classify_ddl_pair("", "", "VIEW"), dv.STATUS_MISSING_IN_BOTH)
        self.assertEqual(dv.classify_ddl_pair(None, "CREATE VIEW V", "VIEW"), dv.STATUS_MISSING_IN_SOURCE)
        self.assertEqual(dv.classify_ddl_pair("CREATE VIEW V", None, "VIEW"), dv.STATUS_MISSING_IN_TARGET)

    def test_match_and_diff(self):
        self.assertEqual(
            dv.classify_ddl_pair("CREATE VIEW  V\nAS SELECT 1", "CREATE VIEW V AS SELECT 1", "VIEW"),
            dv.STATUS_MATCH,
        )
        self.assertEqual(
            dv.classify_ddl_pair("CREATE VIEW V AS SELECT 1", "CREATE VIEW V AS SELECT 2", "VIEW"),
            dv.STATUS_DIFF,
        )

    def test_sequences_always_match_when_both_exist(self):
        self.assertEqual(
            dv.classify_ddl_pair("CREATE SEQUENCE S INCREMENT BY 1", "CREATE SEQUENCE S INCREMENT BY 10", "SEQUENCE"),
            dv.STATUS_MATCH,
        )


class TestValidateObjects(unittest.TestCase):
    def setUp(self):
        self.source = FakeDdlSource({
            EMP: 'CREATE TABLE "HR"."EMP" ("ID" NUMBER, "NAME" VARCHAR2(20))',
            DEPT: 'CREATE TABLE "HR"."DEPT" ("ID" NUMBER)',
            EMP_SEQ: 'CREATE SEQUENCE "HR"."EMP_SEQ" START WITH 1',
            PKG: 'CREATE OR REPLACE PACKAGE BODY "HR"."PKG_PAYROLL" AS x NUMBER := 1; END;',
        })
        self.target = FakeDdlSource({
            EMP: 'CREATE TABLE "HR"."EMP"\n ("NAME" VARCHAR2(20),\n "ID" NUMBER)',
            EMP_SEQ: 'CREATE SEQUENCE "HR"."EMP_SEQ" START WITH 5000',
            PKG: 'CREATE OR REPLACE PACKAGE BODY "HR"."PKG_PAYROLL" AS x NUMBER := 2; END;',
            GHOST: 'CREATE VIEW "HR"."GHOST" AS SELECT 1 FROM DUAL',
        })

    def test_statuses_and_order(self):
        items = [PKG, EMP, GHOST, DEPT, EMP_SEQ]
        results = dv.validate_objects(items, self.source, self.target)
        self.assertEqual([r.item for r in results], items)
        self.assertEqual(
            [r.status for r in results],
            [dv.STATUS_DIFF, dv.STATUS_MATCH, dv.STATUS_MISSING_IN_SOURCE,
             dv.STATUS_MISSING_IN_TARGET, dv.STATUS_MATCH],
        )
        self.assertIn("ORA-31603", results[3].message)
        self.assertIsNone(results[0].source_ddl)
        self.assertIsNone(results[0].diff)

    def test_duplicates_are_kept_in_place(self):
        results = dv.validate_objects([EMP, DEPT, EMP], self.source, self.target)
        self.assertEqual([r.item for r in results], [EMP, DEPT, EMP])

    def test_failure_of_one_item_does_not_affect_others(self):
        source = FakeDdlSource(self.source.ddls, raise_for={EMP})
        results = dv.validate_objects([EMP, PKG, EMP_SEQ], source, self.target)
        self.assertEqual(results[0].status, dv.STATUS_MISSING_IN_SOURCE)
        self.assertIn("RuntimeError", results[0].message)
        self.assertEqual(results[1].status, dv.STATUS_DIFF)
        self.assertEqual(results[2].status, dv.STATUS_MATCH)

    def test_classification_failure_is_recorded_per_item(self):
        real_classify = dv.classify_ddl_pair

        def classify(source_ddl, target_ddl, object_type):
            if object_type == "PACKAGE BODY":
                raise TypeError("unexpected DDL value")
            return real_classify(source_ddl, target_ddl, object_type)

        with mock.patch.object(dv, "classify_ddl_pair", side_effect=classify):
            results = dv.validate_objects([EMP, PKG, EMP_SEQ], self.source, self.target, with_diff=True)
        self.assertEqual([r.item for r in results], [EMP, PKG, EMP_SEQ])
        self.assertEqual(results[1].status, dv.STATUS_DIFF)
        self.assertIn("TypeError: unexpected DDL value", results[1].message)
        self.assertEqual(results[0].status, dv.STATUS_MATCH)
        self.assertEqual(results[2].status, dv.STATUS_MATCH)

    def test_non_text_ddl_does_not_abort_batch(self):
        source = FakeDdlSource({EMP: b'CREATE TABLE "HR"."EMP" ("ID" NUMBER)', DEPT: self.source.ddls[DEPT]})
        target = FakeDdlSource({EMP: self.target.ddls[EMP], DEPT: self.source.ddls[DEPT]})
        results = dv.validate_objects([EMP, DEPT], source, target, with_diff=True)
        self.assertEqual([r.status for r in results], [dv.STATUS_DIFF, dv.STATUS_MATCH])

    def test_fetch_ddl_and_diff(self):
        results = dv.validate_objects([PKG, EMP], self.source, self.target, fetch_ddl=True, with_diff=True)
        self.assertEqual(results[0].source_ddl, self.source.ddls[PKG])
        self.assertEqual(results[0].target_ddl, self.target.ddls[PKG])
        self.assertIn("--- source/HR.PKG_PAYROLL", results[0].diff)
        self.assertIn("+++ target/HR.PKG_PAYROLL", results[0].diff)
        self.assertIn("-CREATE OR REPLACE PACKAGE BODY \"HR\".\"PKG_PAYROLL\" AS x NUMBER := 1;", results[0].diff)
        self.assertIsNone(results[1].diff)

    def test_summarize_results_includes_every_status(self):
        results = dv.validate_objects([EMP, DEPT], self.source, self.target)
        counts = dv.summarize_results(results)
        self.assertEqual(list(counts.keys()), list(dv.STATUS_ORDER))
        self.assertEqual(counts[dv.STATUS_MATCH], 1)
        self.assertEqual(counts[dv.STATUS_MISSING_IN_TARGET], 1)
        self.assertEqual(counts[dv.STATUS_MISSING_IN_BOTH], 0)

    def test_build_ddl_diff_identical_is_empty(self):
        self.assertEqual(dv.build_ddl_diff("CREATE SEQUENCE A", "CREATE SEQUENCE B", "SEQUENCE"), "")
        self.assertIn(SEQUENCE_SENTINEL, dv._diff_lines(SEQUENCE_SENTINEL))


class TestObjectList(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.dir = Path(self.tmp.name)

    def test_parse_object_identity(self):
        self.assertEqual(
            dv.parse_object_identity(" hr ", "pkg_a", "package_body"),
            dv.ObjectIdentity("HR", "PKG_A", "PACKAGE BODY"),
        )
        self.assertEqual(
            dv.parse_object_identity('"App"', '"pkg_a"', "package"),
            dv.ObjectIdentity("App", "pkg_a", "PACKAGE"),
        )
        with self.assertRaises(ValueError):
            dv.parse_object_identity("HR", "X", "DATABASE LINK")
        with self.assertRaises(ValueError):
            dv.parse_object_identity("", "X", "TABLE")

    def test_load_object_list(self):
        path = self.dir / "objects.csv"
        path.write_text(
            "# exported from the release checklist\n"
            "OWNER,OBJECT_NAME,OBJECT_TYPE\n"
            "hr,emp,table\n"
            "\n"
            "HR.PKG_PAYROLL,PACKAGE BODY\n"
            "HR,EMP,TABLE\n"
            "HR,DBL,DATABASE LINK\n"
            "JUSTONECELL\n"
            "HR,EMP_SEQ,SEQUENCE\n",
            encoding="utf-8",
        )
        items = dv.load_object_list(path)
        self.assertEqual(items, [EMP, PKG, EMP_SEQ])

    def test_first_row_type_object_is_not_a_header(self):
        path = self.dir / "objects.csv"
        path.write_text("HR,ADDRESS_T,TYPE\nHR,EMP,TABLE\n", encoding="utf-8")
        self.assertEqual(
            dv.load_object_list(path),
            [dv.ObjectIdentity("HR", "ADDRESS_T", "TYPE"), EMP],
        )

    def test_header_without_owner_word(self):
        path = self.dir / "objects.csv"
        path.write_text("NAME,TYPE\nHR.EMP,TABLE\n", encoding="utf-8")
        self.assertEqual(dv.load_object_list(path), [EMP])

    def test_quoted_names_keep_case(self):
        path = self.dir / "objects.csv"
        path.write_text('HR,"""Pkg_Mixed""",PACKAGE\n', encoding="utf-8")
        self.assertEqual(dv.load_object_list(path), [dv.ObjectIdentity("HR", "Pkg_Mixed", "PACKAGE")])

    def test_load_object_list_missing_file(self):
        with self.assertRaises(dv.ConfigError):
            dv.load_object_list(self.dir / "nope.csv")


class TestLoadConfig(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.path = Path(self.tmp.name) / "config.ini"

    def write(self, text):
        self.path.write_text(text, encoding="utf-8")

    def test_load_config_with_defaults(self):
        self.write(
            "[SOURCE]\n"
            "label = DEV\n"
            "user = hr\n"
            "password = secret\n"
            "host = dev-db\n"
            "service_name = ORCLPDB1\n"
            "[TARGET]\n"
            "user = hr\n"
            "password = secret\n"
            "dsn = prod-db:1522/PROD  # primary\n"
            "[SETTINGS]\n"
            "owners = hr, scott\n"
            "object_types = table, package_body\n"
        )
        source, target, settings = dv.load_config(self.path)
        self.assertEqual(source, dv.EnvConfig("DEV", "hr", "secret", "dev-db:1521/ORCLPDB1"))
        self.assertEqual(target.label, "TARGET")
        self.assertEqual(target.dsn, "prod-db:1522/PROD")
        self.assertEqual(settings["owners_list"], ["HR", "SCOTT"])
        self.assertEqual(settings["object_types_list"], ["TABLE", "PACKAGE BODY"])
        self.assertEqual(settings["report_dir"], "reports")
        self.assertFalse(dv.parse_bool(settings["generate_patch"]))

    def test_default_object_types(self):
        self.write(
            "[SOURCE]\nuser = a\npassword = b\ndsn = h/s\n"
            "[TARGET]\nuser = a\npassword = b\ndsn = h/s\n"
        )
        _, _, settings = dv.load_config(self.path)
        self.assertEqual(settings["object_types_list"], list(dv.DEFAULT_COMPARE_TYPES))
        self.assertEqual(settings["owners_list"], [])

    def test_missing_section(self):
        self.write("[SOURCE]\nuser = a\npassword = b\ndsn = h/s\n")
        with self.assertRaises(dv.ConfigError):
            dv.load_config(self.path)

    def test_missing_required_key(self):
        self.write(
            "[SOURCE]\nuser = a\npassword = b\n"
            "[TARGET]\nuser = a\npassword = b\ndsn = h/s\n"
        )
        with self.assertRaises(dv.ConfigError) as ctx:
            dv.load_config(self.path)
        self.assertIn("dsn", str(ctx.exception))

    def test_unsupported_object_type(self):
        self.write(
            "[SOURCE]\nuser = a\npassword = b\ndsn = h/s\n"
            "[TARGET]\nuser = a\npassword = b\ndsn = h/s\n"
            "[SETTINGS]\nobject_types = TABLE, QUEUE\n"
        )
        with self.assertRaises(dv.ConfigError):
            dv.load_config(self.path)

    def test_missing_file(self):
        with self.assertRaises(dv.ConfigError):
            dv.load_config(self.path)

    def test_init_oracle_client_thin_mode_and_bad_dir(self):
        dv.init_oracle_client({"oracle_client_lib_dir": ""})
        with self.assertRaises(dv.ConfigError):
            dv.init_oracle_client({"oracle_client_lib_dir": str(Path(self.tmp.name) / "missing")})

    def test_parse_bool(self):
        self.assertTrue(dv.parse_bool("Yes"))
        self.assertTrue(dv.parse_bool(" on "))
        self.assertFalse(dv.parse_bool("false"))
        self.assertTrue(dv.parse_bool("", default=True))


class TestOracleAccess(unittest.TestCase):
    def test_get_ddl_reads_lob_and_maps_type(self):
        cursor = FakeCursor(rows=[(FakeLob("CREATE PACKAGE BODY X"),)])
        source = dv.OracleDdlSource(FakeConnection(cursor), "DEV")
        fetch = source.get_ddl(PKG)
        self.assertEqual(fetch, dv.DdlFetch("CREATE PACKAGE BODY X"))
        self.assertEqual(cursor.executed[0][1], ["PACKAGE_BODY", "PKG_PAYROLL", "HR"])

    def test_get_ddl_object_not_found(self):
        error = oracledb.DatabaseError("ORA-31603: object \"GHOST\" of type VIEW not found in schema \"HR\"")
        source = dv.OracleDdlSource(FakeConnection(FakeCursor(error=error)), "DEV")
        fetch = source.get_ddl(GHOST)
        self.assertIsNone(fetch.ddl)
        self.assertTrue(fetch.error.startswith("ORA-31603"))

    def test_get_ddl_other_error(self):
        error = oracledb.DatabaseError("ORA-01031: insufficient privileges")
        source = dv.OracleDdlSource(FakeConnection(FakeCursor(error=error)), "DEV")
        fetch = source.get_ddl(EMP)
        self.assertEqual(fetch, dv.DdlFetch(None, "ORA-01031: insufficient privileges"))

    def test_get_ddl_empty_row(self):
        source = dv.OracleDdlSource(FakeConnection(FakeCursor(rows=[(None,)])), "DEV")
        self.assertIsNone(source.get_ddl(EMP).ddl)

    def test_setup_metadata_session_ignores_errors(self):
        cursor = FakeCursor(error=oracledb.DatabaseError("ORA-06550"))
        dv.setup_metadata_session(FakeConnection(cursor))
        self.assertIn("SQLTERMINATOR", cursor.executed[0][0])

    def test_list_schema_objects(self):
        cursor = FakeCursor(rows=[("HR", "EMP", "TABLE"), ("HR", "PKG_PAYROLL", "PACKAGE BODY"), (None, "X", "TABLE")])
        items = dv.list_schema_objects(FakeConnection(cursor), ["hr"], ["table", "package body"])
        self.assertEqual(items, [EMP, PKG])
        sql, params = cursor.executed[0]
        self.assertEqual(params, ["HR", "TABLE", "PACKAGE BODY"])
        self.assertIn("OWNER IN (:1)", sql)
        self.assertIn("OBJECT_TYPE IN (:2,:3)", sql)

    def test_list_schema_objects_without_owners(self):
        cursor = FakeCursor(rows=[("HR", "EMP", "TABLE")])
        self.assertEqual(dv.list_schema_objects(FakeConnection(cursor), [], ["TABLE"]), [])
        self.assertEqual(cursor.executed, [])

    def test_collect_object_identities_union(self):
        source = FakeConnection(FakeCursor(rows=[("HR", "EMP", "TABLE"), ("HR", "PKG_PAYROLL", "PACKAGE BODY")]))
        target = FakeConnection(FakeCursor(rows=[("HR", "EMP", "TABLE"), ("HR", "DEPT", "TABLE")]))
        items = dv.collect_object_identities(source, target, ["HR"], ["TABLE", "PACKAGE BODY"])
        self.assertEqual(items, [PKG, DEPT, EMP])


class TestResultOutput(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.dir = Path(self.tmp.name)
        self.results = [
            dv.ValidationResult(EMP, dv.STATUS_MATCH),
            dv.ValidationResult(PKG, dv.STATUS_DIFF, "normalized DDL differs", "A, B", "A, C", "--- a\n+++ b"),
        ]

    def test_write_results_csv(self):
        path = dv.write_results_csv(self.results, self.dir / "out" / "results.csv")
        with path.open(encoding="utf-8", newline="") as f:
            rows = list(csv.reader(f))
        self.assertEqual(rows[0], dv.CSV_HEADER)
        self.assertEqual(rows[2], ["HR", "PKG_PAYROLL", "PACKAGE BODY", "DIFF", "normalized DDL differs"])

    def test_write_results_json(self):
        path = dv.write_results_json(self.results, self.dir / "results.json")
        payload = json.loads(path.read_text(encoding="utf-8"))
        first, second = payload["results"]
        self.assertNotIn("source_ddl", first)
        self.assertEqual(second["source_ddl"], "A, B")
        self.assertEqual(second["diff"], "--- a\n+++ b")


if __name__ == "__main__":
    unittest.main()
