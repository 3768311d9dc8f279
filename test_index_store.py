"""
Tests for the query index and its invalidation protocol.
"""
import asyncio
import os
import tempfile
import unittest
from pathlib import Path

from sqlc_index_mcp.index_store import SqlcIndex
from sqlc_index_mcp.manifest import ManifestError, ManifestPatterns

USERS_MANIFEST = '''
version: "2"
sql:
  - engine: "postgresql"
    queries: "queries/*.sql"
    schema: "schema.sql"
'''

GET_USER_SQL = '''-- users

-- name: GetUser :one
SELECT * FROM users WHERE id = $1;
'''


class FakeFilesystem:
    """In-memory collaborators with optional gates to hold a read open."""

    def __init__(self):
        self.manifests = {}
        self.globs = {}
        self.files = {}
        self.gates = {}
        self.reads = []

    async def read_manifest(self, path):
        await asyncio.sleep(0)
        if path not in self.manifests:
            raise ManifestError(path, "failed to read manifest")
        return ManifestPatterns(patterns=list(self.manifests[path]))

    async def list_files(self, absolute_glob):
        await asyncio.sleep(0)
        result = self.globs.get(absolute_glob, [])
        if isinstance(result, Exception):
            raise result
        return list(result)

    async def read_file(self, path):
        self.reads.append(path)
        gate = self.gates.pop(path, None)
        if gate is not None:
            await gate.wait()
        else:
            await asyncio.sleep(0)
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]


class RecordingWatcher:
    def __init__(self):
        self.watched = {}
        self.unwatched = []

    def watch_config(self, config_path, globs):
        self.watched[config_path] = list(globs)

    def unwatch_config(self, config_path):
        self.unwatched.append(config_path)
        self.watched.pop(config_path, None)


def hit_files(hits):
    return sorted(hit.from_file for hit in hits)


class TestIndexOnDisk(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.base_path = Path(self.temp_dir.name).resolve()
        self.write("sqlc.yaml", USERS_MANIFEST)
        self.write("queries/get_user.sql", GET_USER_SQL)
        self.manifest = str(self.base_path / "sqlc.yaml")
        self.get_user = str(self.base_path / "queries" / "get_user.sql")
        self.index = SqlcIndex()

    def tearDown(self):
        self.temp_dir.cleanup()

    def write(self, relative, content):
        path = self.base_path / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        return str(path)

    async def test_build_and_lookup(self):
        summary = await self.index.build([self.manifest])

        self.assertEqual(summary["manifests"], 1)
        hits = self.index.lookup("GetUser")
        self.assertEqual(len(hits), 1)
        self.assertEqual(hits[0].file_path, self.get_user)
        self.assertEqual(hits[0].line_range.start_line, 2)
        self.assertEqual(hits[0].line_range.start_character, 0)
        self.assertEqual(hits[0].line_range.end_character, len("-- name: GetUser :one"))
        self.assertEqual(hits[0].command, ":one")
        self.assertEqual(self.index.config_files(self.manifest), {self.get_user})

    async def test_lookup_before_build_is_unknown(self):
        with self.assertLogs("sqlc_index_mcp.index_store", level="WARNING") as logs:
            self.assertIsNone(self.index.lookup("GetUser"))
        self.assertIn("before index was ready", logs.output[0])

    async def test_rename_query(self):
        await self.index.build([self.manifest])

        self.write("queries/get_user.sql", GET_USER_SQL.replace("GetUser", "GetUserByID"))
        await self.index.index_file(self.get_user)

        self.assertIsNone(self.index.lookup("GetUser"))
        hits = self.index.lookup("GetUserByID")
        self.assertEqual(hit_files(hits), [self.get_user])
        self.assertNotIn("GetUser", self.index.name_to_hits)

    async def test_index_file_is_idempotent(self):
        await self.index.build([self.manifest])
        before = self.index.lookup("GetUser")

        await self.index.index_file(self.get_user)
        await self.index.index_file(self.get_user)

        self.assertEqual(self.index.lookup("GetUser"), before)
        self.assertEqual(self.index.file_names(self.get_user), {"GetUser"})

    async def test_invalidate_file(self):
        self.write("queries/list_users.sql", "-- name: ListUsers :many\n-- name: GetUser :one\n")
        await self.index.build([self.manifest])
        self.assertEqual(len(self.index.lookup("GetUser")), 2)

        list_users = str(self.base_path / "queries" / "list_users.sql")
        self.index.invalidate_file(list_users)

        self.assertEqual(hit_files(self.index.lookup("GetUser")), [self.get_user])
        self.assertNotIn("ListUsers", self.index.name_to_hits)
        self.assertNotIn(list_users, self.index.file_to_names)
        # the manifest still owns the file until it is re-indexed or invalidated
        self.assertIn(list_users, self.index.config_files(self.manifest))

        self.index.invalidate_file(list_users)
        self.index.invalidate_file(str(self.base_path / "never_indexed.sql"))
        self.assertEqual(hit_files(self.index.lookup("GetUser")), [self.get_user])

    async def test_invalidate_config(self):
        other = self.write("queries/other.sql", "-- name: ListUsers :many\n")
        await self.index.build([self.manifest])

        self.index.invalidate_config(self.manifest)

        self.assertIsNone(self.index.lookup("GetUser"))
        self.assertIsNone(self.index.lookup("ListUsers"))
        self.assertEqual(self.index.config_files(self.manifest), set())
        self.assertNotIn(other, self.index.file_to_names)

        self.index.invalidate_config(self.manifest)
        self.assertEqual(self.index.get_stats()["names"], 0)

    async def test_same_name_in_two_files_regardless_of_order(self):
        first = self.write("queries/a.sql", "-- name: ListUsers :many\n")
        second = self.write("queries/b.sql", "\n-- name: ListUsers :many\n")

        for order in ([first, second], [second, first]):
            with self.subTest(order=order):
                index = SqlcIndex()
                await index.build([])
                for path in order:
                    await index.index_file(path)
                self.assertEqual(hit_files(index.lookup("ListUsers")), sorted([first, second]))

    async def test_broken_manifest_does_not_affect_others(self):
        broken = self.write("broken/sqlc.yaml", "sql: [unclosed")
        with self.assertLogs("sqlc_index_mcp.index_store", level="ERROR"):
            summary = await self.index.build([broken, self.manifest])

        self.assertEqual(summary["failed_manifests"], 1)
        self.assertIn(broken, self.index.get_stats()["failed_manifests"])
        self.assertEqual(hit_files(self.index.lookup("GetUser")), [self.get_user])

    async def test_deleted_file_clears_previous_hits(self):
        await self.index.build([self.manifest])

        os.remove(self.get_user)
        found = await self.index.index_file(self.get_user)

        self.assertEqual(found, 0)
        self.assertIsNone(self.index.lookup("GetUser"))

    async def test_reindexing_config_drops_files_no_longer_matched(self):
        reports = self.write("reports/monthly.sql", "-- name: MonthlyReport :many\n")
        await self.index.build([self.manifest])

        self.write("sqlc.yaml", 'sql:\n  - queries: "reports/*.sql"\n')
        await self.index.index_config(self.manifest)

        self.assertIsNone(self.index.lookup("GetUser"))
        self.assertEqual(hit_files(self.index.lookup("MonthlyReport")), [reports])
        self.assertEqual(self.index.config_files(self.manifest), {reports})

    async def test_dot_pattern_indexes_manifest_directory(self):
        manifest = self.write("flat/sqlc.yml", 'sql:\n  - queries: "."\n')
        flat = self.write("flat/query.sql", "-- name: FlatQuery :exec\n")
        await self.index.build([manifest])

        self.assertEqual(hit_files(self.index.lookup("FlatQuery")), [flat])
        self.assertEqual(self.index.config_files(manifest), {manifest, flat})

    async def test_shared_file_survives_other_manifest_invalidation(self):
        second = self.write("second/sqlc.yaml", 'sql:\n  - queries: "../queries/*.sql"\n')
        await self.index.build([self.manifest, second])

        self.index.invalidate_config(second)

        self.assertEqual(hit_files(self.index.lookup("GetUser")), [self.get_user])
        self.index.invalidate_config(self.manifest)
        self.assertIsNone(self.index.lookup("GetUser"))


class TestIndexWithFakes(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.fs = FakeFilesystem()
        self.index = SqlcIndex(
            manifest_reader=self.fs.read_manifest,
            file_lister=self.fs.list_files,
            file_reader=self.fs.read_file,
        )

    async def test_lookup_during_index_file_sees_old_or_new_entries(self):
        self.fs.files["/db/q.sql"] = "-- name: GetUser :one\n"
        await self.index.build([])
        await self.index.index_file("/db/q.sql")

        gate = asyncio.Event()
        self.fs.gates["/db/q.sql"] = gate
        self.fs.files["/db/q.sql"] = "-- name: GetUserByID :one\n"
        task = asyncio.create_task(self.index.index_file("/db/q.sql"))
        await asyncio.sleep(0)

        self.assertEqual(len(self.index.lookup("GetUser")), 1)
        self.assertIsNone(self.index.lookup("GetUserByID"))

        gate.set()
        await task
        self.assertIsNone(self.index.lookup("GetUser"))
        self.assertEqual(len(self.index.lookup("GetUserByID")), 1)

    async def test_interleaved_index_file_calls_converge(self):
        self.fs.files["/db/q.sql"] = "-- name: GetUser :one\n-- name: ListUsers :many\n"
        await self.index.build([])

        slow = asyncio.Event()
        self.fs.gates["/db/q.sql"] = slow
        first = asyncio.create_task(self.index.index_file("/db/q.sql"))
        await asyncio.sleep(0)
        await self.index.index_file("/db/q.sql")
        slow.set()
        await first

        self.assertEqual(len(self.index.lookup("GetUser")), 1)
        self.assertEqual(len(self.index.lookup("ListUsers")), 1)

    async def test_index_config_keeps_files_indexed_before_a_failure(self):
        self.fs.manifests["/db/sqlc.yaml"] = ["a/*.sql", "b/*.sql"]
        self.fs.globs["/db/a/*.sql"] = ["/db/a/one.sql"]
        self.fs.globs["/db/b/*.sql"] = RuntimeError("listing failed")
        self.fs.files["/db/a/one.sql"] = "-- name: One :one\n"
        await self.index.build([])

        with self.assertRaises(RuntimeError):
            await self.index.index_config("/db/sqlc.yaml")

        self.assertEqual(len(self.index.lookup("One")), 1)

    async def test_listing_os_error_means_no_files(self):
        self.fs.manifests["/db/sqlc.yaml"] = ["a/*.sql", "b/*.sql"]
        self.fs.globs["/db/a/*.sql"] = PermissionError("denied")
        self.fs.globs["/db/b/*.sql"] = ["/db/b/two.sql"]
        self.fs.files["/db/b/two.sql"] = "-- name: Two :one\n"

        await self.index.build(["/db/sqlc.yaml"])

        self.assertEqual(self.index.config_files("/db/sqlc.yaml"), {"/db/b/two.sql"})

    async def test_file_matched_by_two_patterns_is_read_once(self):
        self.fs.manifests["/db/sqlc.yaml"] = ["*.sql", "q.sql"]
        self.fs.globs["/db/*.sql"] = ["/db/q.sql"]
        self.fs.globs["/db/q.sql"] = ["/db/q.sql"]
        self.fs.files["/db/q.sql"] = "-- name: GetUser :one\n"

        await self.index.build(["/db/sqlc.yaml"])

        self.assertEqual(self.fs.reads, ["/db/q.sql"])
        self.assertEqual(len(self.index.lookup("GetUser")), 1)

    async def test_watches_follow_config_lifecycle(self):
        watcher = RecordingWatcher()
        self.index.watcher = watcher
        self.fs.manifests["/db/sqlc.yaml"] = [".", "queries/**/*.sql"]

        await self.index.build(["/db/sqlc.yaml"])
        self.assertEqual(watcher.watched["/db/sqlc.yaml"], ["/db/*", "/db/queries/**/*.sql"])

        self.index.invalidate_config("/db/sqlc.yaml")
        self.assertEqual(watcher.unwatched, ["/db/sqlc.yaml"])
        self.assertEqual(watcher.watched, {})

    async def test_index_file_attributes_file_to_config(self):
        self.fs.files["/db/new.sql"] = "-- name: NewQuery :exec\n"
        await self.index.build([])

        await self.index.index_file("/db/new.sql", config_path="/db/sqlc.yaml")
        self.assertEqual(self.index.config_files("/db/sqlc.yaml"), {"/db/new.sql"})

        self.index.invalidate_file("/db/new.sql", config_path="/db/sqlc.yaml")
        self.assertEqual(self.index.config_files("/db/sqlc.yaml"), set())
        self.assertIsNone(self.index.lookup("NewQuery"))


if __name__ == "__main__":
    unittest.main()
