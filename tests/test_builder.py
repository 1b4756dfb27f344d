"""Tests for build orchestration with external tools mocked."""

import os
import tarfile
from pathlib import Path
from unittest.mock import patch

import pytest

from emacsbuild import (
    LOCALLISPPATH,
    BuildEnvironment,
    Builder,
    BuildOptions,
    CommandError,
    DependencyProvider,
    FileError,
    extract_source,
    make_options,
)


@pytest.fixture
def options():
    return make_options("x86_64", os_version="14.4", machine="x86_64", jobs=8)


@pytest.fixture
def source_dir(temp_dir):
    src = temp_dir / "emacs-29.1"
    src.mkdir()
    (src / "configure").write_text("#!/bin/sh\n")
    return src


def fake_tar(command, **kwargs):
    """Stand in for tar by creating the archive it was asked to write."""
    if command[:2] == ["tar", "-cjf"]:
        (Path(kwargs["cwd"]) / command[2]).write_bytes(b"BZh")
    return ""


def make_builder(source_dir, staging_root, options, **kwargs):
    kwargs.setdefault("base_env", {"PATH": "/usr/bin:/bin"})
    return Builder(
        source_dir,
        staging_root,
        "Emacs-29.1-10.11-x86_64",
        options,
        **kwargs,
    )


class TestEnvironment:
    def test_staging_paths_prepended(self, temp_dir):
        env = BuildEnvironment.for_staging_root(
            temp_dir / "stage",
            "clang",
            base={"PATH": "/usr/bin", "PKG_CONFIG_PATH": "/opt/pc"},
        ).as_dict()
        assert env["PATH"] == f"{temp_dir / 'stage' / 'bin'}:/usr/bin"
        assert env["PKG_CONFIG_PATH"] == (
            f"{temp_dir / 'stage' / 'lib' / 'pkgconfig'}:/opt/pc"
        )
        assert env["CC"] == "clang"

    def test_empty_base(self, temp_dir):
        env = BuildEnvironment.for_staging_root("/stage", "cc", base={}).as_dict()
        assert env["PATH"] == "/stage/bin"
        assert env["PKG_CONFIG_PATH"] == "/stage/lib/pkgconfig"

    def test_process_environment_untouched(self, source_dir, staging_root, options):
        with patch.dict("os.environ", {"PATH": "/usr/bin"}, clear=True):
            builder = Builder(source_dir, staging_root, "x", options)
            assert os.environ["PATH"] == "/usr/bin"
            assert "CC" not in os.environ
        assert builder.environment.variables["PATH"].startswith(
            str(staging_root / "bin")
        )


class TestCompilerAndFlags:
    def test_compiler_with_minimum_os(self, source_dir, staging_root, options):
        builder = make_builder(source_dir, staging_root, options)
        assert builder.compiler() == "clang -mmacosx-version-min=10.11"

    def test_compiler_with_extra_flags(self, source_dir, staging_root):
        options = make_options("arm64", os_version="13.0", machine="x86_64")
        builder = make_builder(source_dir, staging_root, options)
        assert builder.compiler() == "clang -mmacosx-version-min=11.0 -arch arm64"

    def test_plain_compiler(self, source_dir, staging_root):
        options = BuildOptions(arch="x86_64", cc="gcc", os_version="10.13")
        assert make_builder(source_dir, staging_root, options).compiler() == "gcc"

    def test_configure_flags(self, source_dir, staging_root, options):
        flags = make_builder(source_dir, staging_root, options).configure_flags()
        assert flags == [f"--enable-locallisppath={LOCALLISPPATH}", "--with-modules"]

    def test_cross_configure_flags(self, source_dir, staging_root):
        options = make_options(
            "arm64",
            os_version="13.0",
            machine="x86_64",
            extra_configure_flags=["--with-native-compilation"],
        )
        flags = make_builder(source_dir, staging_root, options).configure_flags()
        assert flags[2:] == [
            "--host=aarch64-apple-darwin",
            "--build=x86_64-apple-darwin",
            "--with-native-compilation",
        ]


class TestBuild:
    def test_steps_run_in_order(
        self, source_dir, staging_root, options, temp_dir, make_editor
    ):
        builder = make_builder(
            source_dir,
            staging_root,
            options,
            output_dir=temp_dir / "dist",
            link_editor=make_editor({}),
        )
        builder.executable.parent.mkdir(parents=True)
        builder.executable.write_bytes(b"emacs")

        with patch("emacsbuild.run_command", side_effect=fake_tar) as mock_run:
            archive = builder.build()

        commands = [c.args[0] for c in mock_run.call_args_list]
        assert [c[:2] for c in commands] == [
            ["./configure", f"--enable-locallisppath={LOCALLISPPATH}"],
            ["make", "clean"],
            ["make", "-j8"],
            ["make", "install"],
            ["tar", "-cjf"],
        ]
        assert commands[-1][-3:] == ["-C", "nextstep", "Emacs.app"]
        assert archive == temp_dir / "dist" / "Emacs-29.1-10.11-x86_64.tar.bz2"
        assert archive.is_file()

    def test_commands_get_build_environment(
        self, source_dir, staging_root, options
    ):
        builder = make_builder(source_dir, staging_root, options)
        with patch("emacsbuild.run_command", return_value="") as mock_run:
            builder.compile()
        for call in mock_run.call_args_list:
            assert call.kwargs["env"]["CC"] == "clang -mmacosx-version-min=10.11"
            assert call.kwargs["cwd"] == source_dir
            assert call.kwargs["capture"] is True

    def test_serial_make_without_jobs(self, source_dir, staging_root):
        options = make_options("x86_64", os_version="14.4", machine="x86_64")
        builder = make_builder(source_dir, staging_root, options)
        with patch("emacsbuild.run_command", return_value="") as mock_run:
            builder.compile()
        assert ["make"] in [c.args[0] for c in mock_run.call_args_list]

    def test_snapshot_without_configure_runs_autogen(
        self, source_dir, staging_root, options
    ):
        (source_dir / "configure").unlink()
        builder = make_builder(source_dir, staging_root, options, trunk=True)
        with patch("emacsbuild.run_command", return_value="") as mock_run:
            builder.compile()
        assert mock_run.call_args_list[0].args[0] == ["./autogen.sh"]

    def test_failure_aborts_build(self, source_dir, staging_root, options):
        builder = make_builder(source_dir, staging_root, options)

        def fail_make(command, **kwargs):
            if command == ["make", "-j8"]:
                raise CommandError("make -j8", 2, "error: oops")
            return ""

        with patch("emacsbuild.run_command", side_effect=fail_make) as mock_run:
            with pytest.raises(CommandError) as excinfo:
                builder.build()
        assert excinfo.value.returncode == 2
        assert ["make", "install"] not in [c.args[0] for c in mock_run.call_args_list]

    def test_missing_executable_is_fatal(self, source_dir, staging_root, options):
        builder = make_builder(source_dir, staging_root, options)
        with patch("emacsbuild.run_command", return_value=""):
            with pytest.raises(FileError, match="no executable"):
                builder.build()

    def test_relocates_into_lib_dir(
        self, source_dir, staging_root, options, make_editor
    ):
        lib_a = str(staging_root / "lib" / "libA.dylib")
        editor = make_editor({"Emacs": [lib_a], "libA.dylib": [lib_a]})
        builder = make_builder(
            source_dir, staging_root, options, link_editor=editor
        )
        builder.executable.parent.mkdir(parents=True)
        builder.executable.write_bytes(b"emacs")

        copied = builder.relocate_libraries()

        lib_dir = source_dir / "nextstep/Emacs.app/Contents/MacOS/lib-x86_64-10_11"
        assert copied == [lib_dir / "libA.dylib"]
        assert (
            "change",
            builder.executable,
            lib_a,
            "@executable_path/lib-x86_64-10_11/libA.dylib",
        ) in editor.edits
        assert editor.signed == ["libA.dylib", "Emacs"]

    def test_dry_run(self, source_dir, staging_root, options, temp_dir):
        builder = make_builder(
            source_dir, staging_root, options, dry_run=True, output_dir=temp_dir
        )
        with patch("emacsbuild.subprocess.run") as mock_subprocess:
            archive = builder.build()
        mock_subprocess.assert_not_called()
        assert archive.name == "Emacs-29.1-10.11-x86_64.tar.bz2"
        assert not archive.exists()


class TestExtraSources:
    def test_archive_extra_sources(self, source_dir, staging_root, options, temp_dir):
        sources = staging_root / "sources"
        sources.mkdir()
        (sources / "gnutls-3.8.4.tar.xz").write_bytes(b"x")

        builder = make_builder(
            source_dir, staging_root, options, output_dir=temp_dir / "dist"
        )
        provider = DependencyProvider(staging_root)
        exported = []

        def record(command, **kwargs):
            exported.extend(
                p.name for p in (Path(command[4]) / command[5]).iterdir()
            )
            return ""

        with patch("emacsbuild.run_command", side_effect=record) as mock_run:
            archive = builder.archive_extra_sources(provider)

        assert archive.name == "Emacs-29.1-10.11-x86_64-extra-source.tar"
        assert mock_run.call_args.args[0][:3] == ["tar", "-cf", str(archive.absolute())]
        assert exported == ["gnutls-3.8.4.tar.xz"]


class TestDependencyProvider:
    def test_ensure_runs_prepare_command(self, staging_root):
        provider = DependencyProvider(
            staging_root, prepare_command="./prepare-deps.sh ensure --quiet"
        )
        with patch("emacsbuild.run_command", return_value="") as mock_run:
            provider.ensure()
        assert mock_run.call_args.args[0] == ["./prepare-deps.sh", "ensure", "--quiet"]

    def test_ensure_requires_lib_dir(self, temp_dir):
        with pytest.raises(FileError):
            DependencyProvider(temp_dir / "empty").ensure()

    def test_export_sources(self, staging_root, temp_dir):
        sources = staging_root / "sources"
        sources.mkdir()
        (sources / "libpng-1.6.43.tar.xz").write_bytes(b"png")
        (sources / "patches").mkdir()

        exported = DependencyProvider(staging_root).export_sources(temp_dir / "out")
        assert exported == [temp_dir / "out" / "libpng-1.6.43.tar.xz"]

    def test_export_sources_missing(self, staging_root, temp_dir):
        with pytest.raises(FileError):
            DependencyProvider(staging_root).export_sources(temp_dir / "out")

    def test_export_sources_copy_failure(self, staging_root, temp_dir):
        sources = staging_root / "sources"
        sources.mkdir()
        (sources / "libpng-1.6.43.tar.xz").write_bytes(b"png")

        with patch("emacsbuild.shutil.copy2", side_effect=OSError("disk full")):
            with pytest.raises(FileError, match="libpng-1.6.43.tar.xz"):
                DependencyProvider(staging_root).export_sources(temp_dir / "out")


class TestExtractSource:
    @pytest.fixture
    def rc_tarball(self, temp_dir):
        """A release candidate whose tree is named after the final release."""
        tree = temp_dir / "src" / "emacs-29.4"
        tree.mkdir(parents=True)
        (tree / "configure").write_text("#!/bin/sh\n")
        tarball = temp_dir / "emacs-29.4-rc1.tar.gz"
        with tarfile.open(tarball, "w:gz") as tar:
            tar.add(tree, arcname="emacs-29.4")
        return tarball

    def test_extract(self, temp_dir):
        tarball = temp_dir / "emacs-29.1.tar.gz"

        def untar(command, **kwargs):
            if command[1] == "-tf":
                return "emacs-29.1/\nemacs-29.1/configure\nemacs-29.1/src/emacs.c\n"
            (temp_dir / "work" / "emacs-29.1").mkdir(parents=True)
            return ""

        with patch("emacsbuild.run_command", side_effect=untar) as mock_run:
            source = extract_source(tarball, temp_dir / "work")
        assert source == temp_dir / "work" / "emacs-29.1"
        assert mock_run.call_args.args[0][:2] == ["tar", "-xf"]

    def test_release_candidate_unpacks_to_release_tree(self, rc_tarball, temp_dir):
        work = temp_dir / "work"
        work.mkdir()
        source = extract_source(rc_tarball, work)
        assert source == work / "emacs-29.4"
        assert (source / "configure").is_file()

    def test_leading_dot_members(self, temp_dir):
        def untar(command, **kwargs):
            if command[1] == "-tf":
                return "./\n./emacs-29.1/\n./emacs-29.1/configure\n"
            (temp_dir / "emacs-29.1").mkdir()
            return ""

        with patch("emacsbuild.run_command", side_effect=untar):
            source = extract_source(temp_dir / "emacs-29.1.tar.gz", temp_dir)
        assert source == temp_dir / "emacs-29.1"

    def test_several_top_level_entries(self, temp_dir):
        listing = "emacs-29.1/configure\nREADME\n"
        with patch("emacsbuild.run_command", return_value=listing) as mock_run:
            with pytest.raises(FileError, match="exactly one"):
                extract_source(temp_dir / "emacs-29.1.tar.gz", temp_dir)
        assert mock_run.call_count == 1

    def test_extract_wrong_layout(self, temp_dir):
        def untar(command, **kwargs):
            return "emacs-29.1/configure\n" if command[1] == "-tf" else ""

        with patch("emacsbuild.run_command", side_effect=untar):
            with pytest.raises(FileError, match="did not unpack"):
                extract_source(temp_dir / "emacs-29.1.tar.gz", temp_dir)

    def test_dry_run(self, temp_dir):
        with patch("emacsbuild.subprocess.run") as mock_subprocess:
            source = extract_source(
                temp_dir / "emacs-29.1.tar.gz", temp_dir, dry_run=True
            )
        mock_subprocess.assert_not_called()
        assert source == temp_dir / "emacs-29.1"
