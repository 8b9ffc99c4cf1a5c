import asyncio
import json
import os
import sys
import tempfile
import time
import unittest
from pathlib import Path

from oopm.aio import AbortedError, CancelToken
from oopm.client import OopmError
from oopm.resolver import (
    SYNTHETIC_PACKAGE_NAME,
    BatchResolver,
    Dependency,
    ResolutionFailedError,
    SubprocessResolver,
    nerf_url,
    resolver_env,
    scan_resolved_tree,
    write_synthetic_manifest,
)
from oopm.testing import FakeResolver, write_package


class TestSyntheticWorkspace(unittest.TestCase):
    def test_manifest_lists_exact_versions(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            write_synthetic_manifest(
                Path(td),
                [Dependency("a", "1.0.0"), Dependency("@s/b", "2.0.0")],
                registry="https://registry.example",
                token=None,
            )

            payload = json.loads((Path(td) / "package.json").read_text(encoding="utf-8"))
            self.assertEqual(payload["name"], SYNTHETIC_PACKAGE_NAME)
            self.assertEqual(payload["version"], "0.0.1")
            self.assertEqual(payload["dependencies"], {"a": "1.0.0", "@s/b": "2.0.0"})
            self.assertFalse((Path(td) / ".npmrc").exists())

    def test_token_goes_to_npmrc(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            write_synthetic_manifest(
                Path(td), [Dependency("a", "1.0.0")], registry="https://registry.example:8443/npm/", token="tok"
            )

            npmrc = (Path(td) / ".npmrc").read_text(encoding="utf-8")
            self.assertEqual(npmrc, "//registry.example:8443/npm/:_authToken=tok\n")

    def test_one_batch_cannot_hold_two_versions(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(OopmError):
                write_synthetic_manifest(
                    Path(td),
                    [Dependency("a", "1.0.0"), Dependency("a", "2.0.0")],
                    registry="https://registry.example",
                    token=None,
                )

    def test_nerf_url(self) -> None:
        self.assertEqual(nerf_url("https://registry.oomol.com"), "//registry.oomol.com/")
        self.assertEqual(nerf_url("https://r.example/a/b"), "//r.example/a/")

    def test_env_disables_dedupe_and_scripts(self) -> None:
        env = resolver_env("https://registry.example", base={"PATH": "/bin"})
        self.assertEqual(env["PATH"], "/bin")
        self.assertEqual(env["npm_config_registry"], "https://registry.example")
        self.assertEqual(env["npm_config_install_strategy"], "hoisted")
        self.assertEqual(env["npm_config_prefer_dedupe"], "false")
        self.assertEqual(env["npm_config_ignore_scripts"], "true")
        self.assertEqual(env["npm_config_save_exact"], "true")


class TestScanResolvedTree(unittest.TestCase):
    def test_accepts_install_depth_only(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td) / "node_modules"
            write_package(root / "a" / "package", "a", "1.0.0")
            write_package(root / "@s" / "b" / "package", "@s/b", "1.0.0")
            write_package(root / "a" / "node_modules" / "c" / "package", "c", "2.0.0")
            # Not at install depth: bundled fixtures and a stray manifest.
            write_package(root / "a" / "package" / "fixtures" / "package", "fixture", "0.0.0")
            write_package(root / "d", "d", "1.0.0")

            entries = scan_resolved_tree(Path(td))

            self.assertEqual(
                sorted((e.name, e.version) for e in entries),
                [("@s/b", "1.0.0"), ("a", "1.0.0"), ("c", "2.0.0")],
            )

    def test_shallowest_hit_wins(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td) / "node_modules"
            write_package(root / "x" / "node_modules" / "a" / "package", "a", "1.0.0")
            write_package(root / "a" / "package", "a", "1.0.0")

            entries = scan_resolved_tree(Path(td))

            self.assertEqual(len(entries), 1)
            self.assertEqual(entries[0].source_dir, root / "a" / "package")

    def test_no_tree(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            self.assertEqual(scan_resolved_tree(Path(td)), [])


class TestBatchResolver(unittest.IsolatedAsyncioTestCase):
    async def test_entries_live_until_context_exit(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            temp_root = Path(td) / "tmp"
            fake = FakeResolver({("a", "1.0.0"): {"b": "1.0.0"}, ("b", "1.0.0"): {}})
            batch = BatchResolver(registry="https://registry.example", token="tok", resolver=fake, temp_root=temp_root)

            async with batch.resolve([Dependency("a", "1.0.0")]) as entries:
                self.assertEqual(sorted(e.key for e in entries), ["a-1.0.0", "b-1.0.0"])
                self.assertTrue(all(e.source_dir.is_dir() for e in entries))
                self.assertTrue((fake.workdirs[0] / ".npmrc").is_file())

            self.assertEqual(list(temp_root.iterdir()), [])
            self.assertEqual(fake.calls, [{"a": "1.0.0"}])
            self.assertEqual(fake.envs[0]["npm_config_registry"], "https://registry.example")

    async def test_non_zero_exit_fails_and_cleans_up(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            temp_root = Path(td) / "tmp"
            batch = BatchResolver(registry="https://registry.example", resolver=FakeResolver({}), temp_root=temp_root)

            with self.assertRaises(ResolutionFailedError) as ctx:
                async with batch.resolve([Dependency("ghost", "1.0.0")]):
                    self.fail("context body must not run")

            self.assertEqual(ctx.exception.returncode, 1)
            self.assertIn("ghost@1.0.0", str(ctx.exception))
            self.assertEqual(list(temp_root.iterdir()), [])

    async def test_cancel_aborts_and_cleans_up(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            temp_root = Path(td) / "tmp"
            fake = FakeResolver({("a", "1.0.0"): {}}, hang=True)
            batch = BatchResolver(registry="https://registry.example", resolver=fake, temp_root=temp_root)
            cancel = CancelToken()

            async def _use() -> None:
                async with batch.resolve([Dependency("a", "1.0.0")], cancel):
                    pass

            task = asyncio.ensure_future(_use())
            while fake.active == 0:
                await asyncio.sleep(0.01)
            cancel.cancel()

            with self.assertRaises(AbortedError):
                await task
            self.assertEqual(list(temp_root.iterdir()), [])

    async def test_already_cancelled_token_starts_nothing(self) -> None:
        fake = FakeResolver({("a", "1.0.0"): {}})
        batch = BatchResolver(registry="https://registry.example", resolver=fake)
        cancel = CancelToken()
        cancel.cancel()

        with self.assertRaises(AbortedError):
            async with batch.resolve([Dependency("a", "1.0.0")], cancel):
                pass
        self.assertEqual(fake.calls, [])


@unittest.skipUnless(os.name == "posix", "signals are POSIX-only")
class TestSubprocessResolver(unittest.IsolatedAsyncioTestCase):
    async def test_captures_output_and_exit_code(self) -> None:
        resolver = SubprocessResolver((sys.executable, "-c", "import sys; print('resolved'); sys.exit(3)"))
        with tempfile.TemporaryDirectory() as td:
            outcome = await resolver.resolve(Path(td), dict(os.environ), None)

        self.assertEqual(outcome.returncode, 3)
        self.assertIn("resolved", outcome.output)

    async def test_runs_inside_workdir(self) -> None:
        resolver = SubprocessResolver((sys.executable, "-c", "import os; print(os.listdir('.'))"))
        with tempfile.TemporaryDirectory() as td:
            (Path(td) / "package.json").write_text("{}", encoding="utf-8")
            outcome = await resolver.resolve(Path(td), dict(os.environ), None)

        self.assertEqual(outcome.returncode, 0)
        self.assertIn("package.json", outcome.output)

    async def test_cancel_kills_a_process_that_ignores_sigterm(self) -> None:
        script = "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); time.sleep(60)"
        resolver = SubprocessResolver((sys.executable, "-c", script), kill_grace_s=0.2)
        cancel = CancelToken()

        async def _cancel_soon() -> None:
            await asyncio.sleep(0.5)
            cancel.cancel()

        started = time.monotonic()
        with tempfile.TemporaryDirectory() as td:
            canceller = asyncio.ensure_future(_cancel_soon())
            with self.assertRaises(AbortedError):
                await resolver.resolve(Path(td), dict(os.environ), cancel)
            await canceller

        self.assertLess(time.monotonic() - started, 30)

    async def test_missing_command(self) -> None:
        resolver = SubprocessResolver(("oopm-no-such-resolver-binary",))
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(OopmError):
                await resolver.resolve(Path(td), dict(os.environ), None)


if __name__ == "__main__":
    unittest.main()
