import io
import tarfile
import tempfile
import unittest
from pathlib import Path

from oopm.client import OopmError
from oopm.manifest import MANIFEST_FILENAME, THUMBNAIL_FILENAME
from oopm.store import (
    TEMP_PREFIX,
    copy_package,
    entry_dir,
    find_entry,
    is_satisfied,
    make_temp_dir,
    parse_store_key,
    read_entry,
    safe_extract_tar,
    store_key,
)
from oopm.testing import write_package


class TestStoreKey(unittest.TestCase):
    def test_plain_name(self) -> None:
        self.assertEqual(store_key("a", "1.0.0"), "a-1.0.0")
        self.assertEqual(parse_store_key("a-1.0.0"), ("a", "1.0.0"))

    def test_scoped_name_round_trip(self) -> None:
        key = store_key("@oomol/tools", "0.2.1")
        self.assertEqual(key, "@oomol+tools-0.2.1")
        self.assertEqual(parse_store_key(key), ("@oomol/tools", "0.2.1"))

    def test_names_with_dashes_and_prerelease_versions(self) -> None:
        cases = [
            ("foo-bar", "1.2.3"),
            ("pkg-2d", "0.0.1"),
            ("@my-scope/some-pkg", "1.0.0-beta.2"),
            ("x", "10.0.0+build.5"),
            ("base-64", "1.0.0"),
            ("es-2015", "1.0.0"),
            ("v8-2-tools", "2.0.0-rc.1"),
        ]
        for name, version in cases:
            with self.subTest(name=name, version=version):
                self.assertEqual(parse_store_key(store_key(name, version)), (name, version))

    def test_invalid_key(self) -> None:
        with self.assertRaises(OopmError):
            parse_store_key("no-version-here")

    def test_entry_dir_is_flat(self) -> None:
        self.assertEqual(entry_dir(Path("/store"), "@s/n", "1.0.0"), Path("/store/@s+n-1.0.0"))


class TestStoreLookup(unittest.TestCase):
    def test_first_search_dir_wins(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            first = Path(td) / "first"
            second = Path(td) / "second"
            write_package(first / "a-1.0.0", "a", "1.0.0", {"b": "1.0.0"})
            write_package(second / "a-1.0.0", "a", "1.0.0", {"c": "1.0.0"})

            found = find_entry([first, second], "a", "1.0.0")

            self.assertIsNotNone(found)
            directory, manifest = found
            self.assertEqual(directory, first / "a-1.0.0")
            self.assertEqual(manifest.dependencies, {"b": "1.0.0"})

    def test_broken_entry_falls_through_to_next_dir(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            first = Path(td) / "first"
            second = Path(td) / "second"
            (first / "a-1.0.0").mkdir(parents=True)
            (first / "a-1.0.0" / MANIFEST_FILENAME).write_text("name: a\n", encoding="utf-8")
            write_package(second / "a-1.0.0", "a", "1.0.0")

            found = find_entry([first, second], "a", "1.0.0")

            self.assertEqual(found[0], second / "a-1.0.0")

    def test_entry_with_mismatched_manifest_is_not_satisfied(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            store = Path(td)
            write_package(store / "a-1.0.0", "a", "2.0.0")

            self.assertIsNone(read_entry(store / "a-1.0.0", "a", "1.0.0"))


class TestStoreAsync(unittest.IsolatedAsyncioTestCase):
    async def test_is_satisfied(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            store = Path(td)
            write_package(store / "a-1.0.0", "a", "1.0.0")

            self.assertTrue(await is_satisfied(store, "a", "1.0.0"))
            self.assertFalse(await is_satisfied(store, "a", "1.0.1"))

    async def test_copy_excludes_root_thumbnail_only(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            src = write_package(Path(td) / "src", "a", "1.0.0")
            (src / THUMBNAIL_FILENAME).write_text("{}", encoding="utf-8")
            (src / "docs").mkdir()
            (src / "docs" / THUMBNAIL_FILENAME).write_text("{}", encoding="utf-8")
            dest = Path(td) / "store" / "a-1.0.0"

            await copy_package(src, dest)

            self.assertTrue((dest / MANIFEST_FILENAME).is_file())
            self.assertFalse((dest / THUMBNAIL_FILENAME).exists())
            self.assertTrue((dest / "docs" / THUMBNAIL_FILENAME).is_file())


class TestMakeTempDir(unittest.TestCase):
    def test_directory_exists_before_the_first_suspension(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            coro = make_temp_dir(Path(td) / "tmp")

            # Finishing on the first step means there was no await for a cancellation to hit.
            with self.assertRaises(StopIteration) as ctx:
                coro.send(None)

            created = ctx.exception.value
            self.assertTrue(created.is_dir())
            self.assertEqual(created.parent, Path(td) / "tmp")
            self.assertTrue(created.name.startswith(TEMP_PREFIX))


class TestSafeExtract(unittest.TestCase):
    def _tar(self, path: Path, members: dict[str, bytes]) -> None:
        with tarfile.open(path, "w:gz") as tf:
            for name, data in members.items():
                info = tarfile.TarInfo(name)
                info.size = len(data)
                tf.addfile(info, io.BytesIO(data))

    def test_extracts_regular_files(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            archive = Path(td) / "pkg.tgz"
            self._tar(archive, {"package/package/package.oo.yaml": b"name: a\nversion: 1.0.0\n"})

            safe_extract_tar(archive, Path(td) / "out")

            self.assertTrue((Path(td) / "out" / "package" / "package" / "package.oo.yaml").is_file())

    def test_rejects_path_traversal(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            archive = Path(td) / "evil.tgz"
            self._tar(archive, {"../evil.txt": b"x"})

            with self.assertRaises(OopmError):
                safe_extract_tar(archive, Path(td) / "out")
            self.assertFalse((Path(td) / "evil.txt").exists())


if __name__ == "__main__":
    unittest.main()
