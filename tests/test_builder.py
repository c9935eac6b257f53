import logging
import os
import pathlib
import tempfile
import unittest

from portable_bundle.binary import inspect_binary
from portable_bundle.builder import BuildError, build_bundle
from portable_bundle.config import resolve_bundle_config
from portable_bundle.verify import verify_tree
from tests.fixtures import (
    RewritingElfEditor,
    RewritingMachOEditor,
    elf_bytes,
    macho_bytes,
    write_file,
)


class BuilderTestCase(unittest.TestCase):
    def setUp(self):
        self._td = tempfile.TemporaryDirectory()
        self.tmp = pathlib.Path(self._td.name)
        self.store = self.tmp / "nix" / "store"
        self.source = self.store / "000-app"
        self.out = self.tmp / "out"
        self.logger = logging.getLogger("portable_bundle.tests")

    def tearDown(self):
        self._td.cleanup()

    def config(self, closure, **kwargs):
        return resolve_bundle_config(
            source_root=self.source,
            output_dir=self.out,
            closure_paths=closure,
            store_prefix=str(self.store),
            **kwargs,
        )

    def build(self, config):
        return build_bundle(
            config,
            logger=self.logger,
            macho_editor=RewritingMachOEditor(),
            elf_editor=RewritingElfEditor(),
        )


class TestElfBundle(BuilderTestCase):
    def setUp(self):
        super().setUp()
        self.libx_root = self.store / "aaa-libx"
        self.liby_root = self.store / "bbb-liby"
        write_file(
            self.libx_root / "lib" / "libx.so",
            elf_bytes(needed=["liby.so", "libc.so.6"], runpath=str(self.liby_root / "lib")),
        )
        write_file(self.liby_root / "lib" / "liby.so", elf_bytes(needed=["libc.so.6"]))
        write_file(
            self.source / "bin" / "app",
            elf_bytes(
                needed=["libx.so", "libc.so.6"],
                runpath=str(self.libx_root / "lib"),
                interpreter="/lib64/ld-linux-x86-64.so.2",
            ),
            mode=0o555,
        )

    def test_app_libx_liby(self):
        result = self.build(self.config([self.libx_root, self.liby_root], platform="linux"))

        self.assertTrue(result.ok)
        self.assertEqual(result.exit_code, 0)
        self.assertEqual(sorted(p.name for p in result.libraries_copied), ["libx.so", "liby.so"])
        self.assertEqual(result.unresolved, ())
        self.assertIsNone(result.qt_conf)

        app = inspect_binary(self.out / "bin" / "app")
        self.assertEqual(app.run_paths, ("$ORIGIN/../lib",))
        self.assertEqual(app.dependencies, ("libx.so", "libc.so.6"))
        self.assertEqual(inspect_binary(self.out / "lib" / "libx.so").run_paths, ("$ORIGIN",))
        self.assertFalse((self.out / "lib" / "libc.so.6").exists())

    def test_bundle_survives_relocation(self):
        self.build(self.config([self.libx_root, self.liby_root], platform="linux"))
        moved = self.tmp / "elsewhere" / "bundle"
        moved.parent.mkdir()
        os.rename(self.out, moved)
        self.assertTrue(verify_tree(moved, store_prefix=str(self.store)).ok)

    def test_embedded_data_fails_unless_tolerated(self):
        leak = b"\x00" + str(self.store / "ccc-data" / "share" / "icons").encode() + b"\x00"
        write_file(self.liby_root / "lib" / "liby.so", elf_bytes(needed=["libc.so.6"], payload=leak))

        with self.assertLogs("portable_bundle.tests", level="ERROR") as cm:
            result = self.build(self.config([self.libx_root, self.liby_root], platform="linux"))
        self.assertFalse(result.ok)
        self.assertEqual(result.exit_code, 1)
        self.assertTrue(any("FAILED: Found 1 non-portable reference(s)" in line for line in cm.output))

    def test_embedded_data_tolerated(self):
        leak = b"\x00" + str(self.store / "ccc-data" / "share" / "icons").encode() + b"\x00"
        write_file(self.liby_root / "lib" / "liby.so", elf_bytes(needed=["libc.so.6"], payload=leak))
        result = self.build(
            self.config([self.libx_root, self.liby_root], platform="linux", warn_on_binary_data=True)
        )
        self.assertTrue(result.ok)
        self.assertEqual(len(result.report.warnings), 1)
        self.assertEqual(result.report.warnings[0].matches, (str(self.store / "ccc-data" / "share" / "icons"),))

    def test_unresolved_dependency_is_reported(self):
        write_file(self.source / "bin" / "tool", elf_bytes(needed=["libmissing.so.1"]))
        result = self.build(self.config([self.libx_root, self.liby_root], platform="linux"))
        self.assertTrue(result.ok)
        self.assertEqual([e.reference for e in result.unresolved], ["libmissing.so.1"])

    def test_extra_dirs_and_symlinks(self):
        write_file(self.source / "share" / "app" / "data.txt", b"data")
        (self.source / "share" / "app" / "libx-link").symlink_to(self.libx_root / "lib" / "libx.so")
        result = self.build(
            self.config([self.libx_root, self.liby_root], platform="linux", extra_dirs=["share", "missing"])
        )
        self.assertTrue(result.ok)
        self.assertEqual((self.out / "share" / "app" / "data.txt").read_bytes(), b"data")
        link = self.out / "share" / "app" / "libx-link"
        self.assertTrue(link.is_symlink())
        self.assertEqual(os.readlink(link), "../../lib/libx.so")

    def test_interpreter_from_closure_is_bundled(self):
        ld_root = self.store / "lll-myld"
        write_file(ld_root / "lib" / "ld-custom.so.1", elf_bytes(soname="ld-custom.so.1"))
        write_file(
            self.source / "bin" / "custom",
            elf_bytes(
                needed=["libx.so"],
                runpath=str(self.libx_root / "lib"),
                interpreter=str(ld_root / "lib" / "ld-custom.so.1"),
            ),
        )
        write_file(self.libx_root / "lib" / "libx.so", elf_bytes())

        result = self.build(
            self.config([self.libx_root, ld_root], platform="linux", use_default_system_libs=False)
        )

        bundled_ld = self.out / "lib" / "ld-custom.so.1"
        self.assertTrue(bundled_ld.is_file())
        self.assertIn(bundled_ld, result.libraries_copied)
        self.assertEqual(inspect_binary(self.out / "bin" / "custom").interpreter, str(bundled_ld.absolute()))
        self.assertFalse(any(v.kind == "interpreter" for v in result.report.errors))

    def test_staged_files_are_writable(self):
        self.build(self.config([self.libx_root, self.liby_root], platform="linux"))
        self.assertTrue(os.access(self.out / "bin" / "app", os.W_OK))


class TestQtPluginBundle(BuilderTestCase):
    def test_plugins_are_merged_traced_and_configured(self):
        qt = self.store / "ddd-qtbase"
        write_file(qt / "lib" / "libQt6Core.so.6", elf_bytes(needed=["libc.so.6"]))
        write_file(qt / "lib" / "libQt6XcbQpa.so.6", elf_bytes(needed=["libQt6Core.so.6"], runpath=str(qt / "lib")))
        write_file(
            qt / "lib" / "qt-6" / "plugins" / "platforms" / "libqxcb.so",
            elf_bytes(needed=["libQt6XcbQpa.so.6"], runpath=str(qt / "lib")),
        )
        write_file(self.source / "bin" / "viewer", elf_bytes(needed=["libQt6Core.so.6"], runpath=str(qt / "lib")))

        result = self.build(self.config([qt], platform="linux"))

        self.assertTrue(result.ok)
        self.assertTrue((self.out / "plugins" / "platforms" / "libqxcb.so").is_file())
        self.assertTrue((self.out / "lib" / "libQt6XcbQpa.so.6").is_file())
        self.assertEqual(result.qt_conf, self.out / "bin" / "qt.conf")
        self.assertEqual(
            inspect_binary(self.out / "plugins" / "platforms" / "libqxcb.so").run_paths,
            ("$ORIGIN/../../lib",),
        )


class TestMachOBundle(BuilderTestCase):
    def test_host_framework(self):
        qt = self.store / "eee-qt"
        core = qt / "lib" / "QtCore.framework" / "Versions" / "A" / "QtCore"
        write_file(core, macho_bytes(identity=str(core), dependencies=["/usr/lib/libSystem.B.dylib"]))
        write_file(
            self.source / "bin" / "app",
            macho_bytes(dependencies=[str(core), "/usr/lib/libSystem.B.dylib"], rpaths=[str(qt / "lib")]),
        )

        result = self.build(self.config([qt], platform="darwin", host_patterns=["QtCore"]))

        self.assertTrue(result.ok)
        self.assertEqual(result.libraries_copied, ())
        app = inspect_binary(self.out / "bin" / "app")
        self.assertEqual(
            app.dependencies,
            ("@rpath/QtCore.framework/Versions/A/QtCore", "/usr/lib/libSystem.B.dylib"),
        )
        self.assertEqual(app.run_paths, ("@loader_path/../lib",))

    def test_bundled_framework_is_reconstructed(self):
        qt = self.store / "fff-qt"
        core = qt / "lib" / "QtCore.framework" / "Versions" / "A" / "QtCore"
        write_file(core, macho_bytes(identity=str(core), dependencies=["/usr/lib/libSystem.B.dylib"]))
        write_file(self.source / "bin" / "app", macho_bytes(dependencies=[str(core)]))

        result = self.build(self.config([qt], platform="darwin"))

        self.assertTrue(result.ok)
        fw = self.out / "lib" / "QtCore.framework"
        self.assertTrue((fw / "Versions" / "A" / "QtCore").is_file())
        self.assertEqual(os.readlink(fw / "Versions" / "Current"), "A")
        self.assertFalse((self.out / "lib" / "QtCore").exists())
        lib = inspect_binary(fw / "Versions" / "A" / "QtCore")
        self.assertEqual(lib.identity, "@rpath/QtCore.framework/Versions/A/QtCore")
        self.assertEqual(
            inspect_binary(self.out / "bin" / "app").dependencies,
            ("@rpath/QtCore.framework/Versions/A/QtCore",),
        )

    def test_staged_library_behind_rpath_keeps_its_closure(self):
        bar_root = self.store / "hhh-bar"
        bar = bar_root / "lib" / "libbar.dylib"
        write_file(bar, macho_bytes(identity=str(bar)))
        write_file(
            self.source / "lib" / "libfoo.dylib",
            macho_bytes(identity="@rpath/libfoo.dylib", dependencies=[str(bar)]),
        )
        write_file(
            self.source / "bin" / "app",
            macho_bytes(dependencies=["@rpath/libfoo.dylib"], rpaths=["@loader_path/../lib"]),
        )

        result = self.build(self.config([bar_root], platform="darwin"))

        self.assertTrue(result.ok)
        self.assertEqual([p.name for p in result.libraries_copied], ["libbar.dylib"])
        self.assertEqual(
            inspect_binary(self.out / "lib" / "libfoo.dylib").dependencies,
            ("@loader_path/libbar.dylib",),
        )

    def test_merged_plugin_sibling_is_traced_in_place(self):
        qt = self.store / "iii-qt"
        bar_root = self.store / "jjj-bar"
        bar = bar_root / "lib" / "libbar.dylib"
        write_file(bar, macho_bytes(identity=str(bar)))
        write_file(qt / "lib" / "libQt5Core.dylib", macho_bytes(identity=str(qt / "lib" / "libQt5Core.dylib")))
        platforms = qt / "lib" / "qt-5" / "plugins" / "platforms"
        write_file(platforms / "libqcocoa.dylib", macho_bytes(dependencies=["@loader_path/libqhelper.dylib"]))
        write_file(platforms / "libqhelper.dylib", macho_bytes(dependencies=[str(bar)]))
        write_file(self.source / "bin" / "app", macho_bytes(dependencies=[str(qt / "lib" / "libQt5Core.dylib")]))

        result = self.build(self.config([qt, bar_root], platform="darwin"))

        self.assertTrue(result.ok)
        self.assertTrue((self.out / "plugins" / "platforms" / "libqhelper.dylib").is_file())
        self.assertFalse((self.out / "lib" / "libqhelper.dylib").exists())
        self.assertTrue((self.out / "lib" / "libbar.dylib").is_file())
        self.assertEqual(
            inspect_binary(self.out / "plugins" / "platforms" / "libqhelper.dylib").dependencies,
            ("@loader_path/../../lib/libbar.dylib",),
        )

    def test_system_library_name_is_normalized(self):
        cxx = self.store / "ggg-libcxx"
        write_file(cxx / "lib" / "libc++.1.0.dylib", macho_bytes(identity=str(cxx / "lib" / "libc++.1.0.dylib")))
        write_file(self.source / "bin" / "app", macho_bytes(dependencies=[str(cxx / "lib" / "libc++.1.0.dylib")]))

        result = self.build(self.config([cxx], platform="darwin"))

        self.assertTrue(result.ok)
        self.assertFalse((self.out / "lib" / "libc++.1.0.dylib").exists())
        self.assertEqual(inspect_binary(self.out / "bin" / "app").dependencies, ("/usr/lib/libc++.1.dylib",))


class TestInputValidation(BuilderTestCase):
    def test_missing_source_root(self):
        with self.assertRaises(BuildError):
            self.build(self.config([]))

    def test_output_inside_source(self):
        (self.source / "bin").mkdir(parents=True)
        config = resolve_bundle_config(
            source_root=self.source,
            output_dir=self.source / "bundle",
            closure_paths=[],
        )
        with self.assertRaises(BuildError):
            self.build(config)


if __name__ == "__main__":
    unittest.main()
