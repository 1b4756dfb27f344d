#!/usr/bin/env python3
"""emacsbuild - build, relocate and package Emacs for macOS.

This module provides tools for:
1. Compiling Emacs from a release or snapshot source tarball against a
   staging root of pre-built third-party shared libraries
2. Relocating those libraries into the produced Emacs.app bundle and
   rewriting install names so the bundle is self-contained
3. Archiving the bundle (and optionally the third-party sources)

Usage (CLI):
    emacsbuild emacs-29.1.tar.gz release
    emacsbuild emacs-2024-03-15.tar.gz nightly -a arm64 -j 8
    emacsbuild emacs-29.1.tar.gz pretest --extra-rev 2 --no-deps

Usage (API):
    from emacsbuild import Relocator, build, make_options

    # Relocate the staged dylibs referenced by a binary
    relocator = Relocator("/opt/emacs-deps", "Emacs.app/Contents/MacOS/lib")
    relocator.relocate("Emacs.app/Contents/MacOS/Emacs")

    # Full build
    options = make_options("x86_64", os_version="14.4", machine="x86_64")
    archive = build("emacs-29.1", "/opt/emacs-deps",
                    "Emacs-29.1-10.11-x86_64", options)
"""

import argparse
import datetime
import logging
import os
import platform
import re
import shlex
import shutil
import stat
import struct
import subprocess
import sys
import tempfile
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from dotenv import load_dotenv
from macholib.MachO import MachO
from macholib.mach_o import (
    LC_ID_DYLIB,
    LC_LOAD_DYLIB,
    LC_LOAD_UPWARD_DYLIB,
    LC_LOAD_WEAK_DYLIB,
    LC_REEXPORT_DYLIB,
)

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

# ----------------------------------------------------------------------------
# Constants

__version__ = "0.3.0"

# Type aliases
Pathlike = Path | str

# Recognized target architectures
ARCHITECTURES = ("x86_64", "arm64", "i386")

# Base compiler used when none is configured
DEFAULT_CC = "clang"

# Where staged third-party libraries live unless configured otherwise
DEFAULT_STAGING_ROOT = "/usr/local/emacs-deps"

# Environment variable names
ENV_STAGING_ROOT = "EMACSBUILD_STAGING_ROOT"

# Site-lisp search path; ${version} is expanded by Emacs' own Makefile
LOCALLISPPATH = (
    "/Library/Application Support/Emacs/${version}/site-lisp:"
    "/Library/Application Support/Emacs/site-lisp"
)

# Install-name token resolved by dyld relative to the main executable
EXECUTABLE_PATH_TOKEN = "@executable_path"

# Layout of the bundle produced by 'make install'
APP_BUNDLE = Path("nextstep") / "Emacs.app"
APP_EXECUTABLE = Path("Contents") / "MacOS" / "Emacs"

# Load commands listed by a dependency query, in the order otool -L shows them
DYLIB_COMMANDS = {
    LC_ID_DYLIB,
    LC_LOAD_DYLIB,
    LC_LOAD_WEAK_DYLIB,
    LC_REEXPORT_DYLIB,
    LC_LOAD_UPWARD_DYLIB,
}

# Mach-O magic numbers for binary validation
MACHO_MAGIC_NUMBERS = {
    b"\xfe\xed\xfa\xce",  # MH_MAGIC (32-bit)
    b"\xce\xfa\xed\xfe",  # MH_CIGAM (32-bit, reverse byte order)
    b"\xfe\xed\xfa\xcf",  # MH_MAGIC_64 (64-bit)
    b"\xcf\xfa\xed\xfe",  # MH_CIGAM_64 (64-bit, reverse byte order)
    b"\xca\xfe\xba\xbe",  # FAT_MAGIC (universal binary)
    b"\xbe\xba\xfe\xca",  # FAT_CIGAM (universal binary, reverse byte order)
}

# Source tarball names: emacs-29.1.tar.gz, emacs-30.0.93.tar.xz,
# emacs-2024-03-15.tar.gz
SNAPSHOT_PATTERN = re.compile(r"^emacs-(\d{4}-\d{2}-\d{2})\.tar(?:\.\w+)?$")
RELEASE_PATTERN = re.compile(
    r"^emacs-(\d+(?:\.\d+)+(?:-rc\d+)?)\.tar(?:\.\w+)?$"
)

# ----------------------------------------------------------------------------
# Environment and configuration file support

load_dotenv()


def load_config(config_path: Path | None = None) -> dict[str, object]:
    """Load configuration from a TOML file.

    Searches for configuration in the following order:
    1. Explicit config_path if provided
    2. .emacsbuild.toml in current directory
    3. emacsbuild.toml in current directory

    Args:
        config_path: Optional explicit path to config file

    Returns:
        Configuration dictionary (empty if no config found)

    Raises:
        ConfigurationError: If a config file exists but cannot be parsed

    Example .emacsbuild.toml:
        [build]
        staging_root = "/opt/emacs-deps"
        cc = "clang"
        jobs = 8
        output_dir = "dist"
        extra_configure_flags = ["--with-native-compilation"]

        [deps]
        prepare_command = "./prepare-deps.sh ensure"
    """
    if config_path is not None:
        if not config_path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}")
        paths_to_try = [config_path]
    else:
        cwd = Path.cwd()
        paths_to_try = [cwd / ".emacsbuild.toml", cwd / "emacsbuild.toml"]

    for path in paths_to_try:
        if path.exists():
            try:
                with open(path, "rb") as f:
                    data: dict[str, object] = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigurationError(
                    f"Invalid config file {path}: {e}"
                ) from e
            return data

    return {}


def get_config_value(
    config: dict[str, object],
    section: str,
    key: str,
    default: object = None,
) -> object:
    """Get a value from config with section.key lookup."""
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        return default
    return section_config.get(key, default)


# ----------------------------------------------------------------------------
# Error handling


class BuildError(Exception):
    """Base exception class for emacsbuild errors."""


class CommandError(BuildError):
    """Exception raised when an external command fails."""

    def __init__(
        self, command: str, returncode: int, output: str | None = None
    ):
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"Command '{command}' failed with return code {returncode}"
        )


class FileError(BuildError):
    """Exception raised when a file operation fails."""


class ConfigurationError(BuildError):
    """Exception raised when configuration is invalid."""


class VersionError(BuildError):
    """Exception raised when a source tarball name carries no version."""


# ----------------------------------------------------------------------------
# Logging configuration


class CustomFormatter(logging.Formatter):
    """Log formatter showing elapsed build time, with optional color."""

    RESET = "\x1b[0m"
    WHITE = "\x1b[97;20m"
    GREY = "\x1b[38;20m"

    LEVEL_COLORS = {
        logging.DEBUG: GREY,
        logging.INFO: "\x1b[32;20m",
        logging.WARNING: "\x1b[33;20m",
        logging.ERROR: "\x1b[31;20m",
        logging.CRITICAL: "\x1b[31;1m",
    }

    PLAIN_FMT = "%(elapsed)s - %(levelname)s - %(name)s.%(funcName)s - %(message)s"

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def _color_fmt(self, levelno: int) -> str:
        level_color = self.LEVEL_COLORS.get(levelno, self.GREY)
        return (
            f"{self.WHITE}%(elapsed)s{self.RESET} - "
            f"{level_color}%(levelname)s{self.RESET} - "
            f"{self.WHITE}%(name)s.%(funcName)s{self.RESET} - "
            f"{self.GREY}%(message)s{self.RESET}"
        )

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with color if enabled."""
        elapsed = datetime.datetime.fromtimestamp(
            record.relativeCreated / 1000, datetime.timezone.utc
        )
        record.elapsed = elapsed.strftime("%H:%M:%S")
        fmt = self._color_fmt(record.levelno) if self.use_color else self.PLAIN_FMT
        return logging.Formatter(fmt).format(record)


def setup_logging(verbose: bool = False, use_color: bool = True) -> None:
    """Configure logging for a build run.

    Args:
        verbose: Whether to enable debug logging
        use_color: Whether to use colored output
    """
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(CustomFormatter(use_color))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        handlers=[stream_handler],
    )


# ----------------------------------------------------------------------------
# Command execution utilities


def run_command(
    command: list[str],
    dry_run: bool = False,
    log: logging.Logger | None = None,
    env: Mapping[str, str] | None = None,
    cwd: Pathlike | None = None,
    capture: bool = True,
) -> str:
    """Run a command and return its output.

    This is the single command execution utility used throughout the
    module. Uses shell=False; the environment is passed explicitly rather
    than read from the calling process.

    Args:
        command: The command as a list of arguments
        dry_run: If True, log command but don't execute (default: False)
        log: Optional logger for debug/dry-run output
        env: Environment for the child process (default: inherited)
        cwd: Working directory for the child process
        capture: If False, stream output to the terminal instead of
            capturing it (the returned string is then empty)

    Returns:
        The command stdout output

    Raises:
        CommandError: If the command fails or cannot be started
    """
    cmd_str = shlex.join(command)
    if log:
        log.debug("%s", cmd_str)
    if dry_run:
        if log:
            log.info("[DRY RUN] %s", cmd_str)
        return ""
    try:
        result = subprocess.run(
            command,
            shell=False,
            check=True,
            text=True,
            capture_output=capture,
            env=dict(env) if env is not None else None,
            cwd=cwd,
        )
    except subprocess.CalledProcessError as e:
        output = "\n".join(s for s in (e.stdout, e.stderr) if s) or None
        raise CommandError(cmd_str, e.returncode, output) from e
    except FileNotFoundError as e:
        raise CommandError(cmd_str, 127, str(e)) from e
    return result.stdout or ""


# ----------------------------------------------------------------------------
# Binary link metadata


@dataclass(frozen=True)
class LibraryReference:
    """A dynamic library path recorded in a binary's load commands."""

    path: str
    compatibility_version: str = ""
    current_version: str = ""

    @property
    def basename(self) -> str:
        return os.path.basename(self.path)


class LinkEditor(Protocol):
    """Queries and rewrites the dynamic library references of a binary."""

    def dependencies(self, path: Path) -> list[LibraryReference]: ...

    def set_id(self, path: Path, new_id: str) -> None: ...

    def change(self, path: Path, old: str, new: str) -> None: ...

    def sign(self, path: Path) -> None: ...


def is_valid_macho(path: Pathlike) -> bool:
    """Check if a file starts with a Mach-O magic number."""
    path = Path(path)
    if not path.is_file():
        return False
    try:
        with open(path, "rb") as f:
            magic = f.read(4)
    except OSError:
        return False
    return magic in MACHO_MAGIC_NUMBERS


class MachOLinkEditor:
    """Link editor backed by macholib (queries) and install_name_tool (edits).

    The dependency query mirrors ``otool -L``: a shared library's own
    identity record comes first, followed by each referenced library.
    Universal binaries list each path once.
    """

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run
        self.log = logging.getLogger(self.__class__.__name__)

    def run_command(self, command: list[str]) -> str:
        return run_command(command, dry_run=self.dry_run, log=self.log)

    def dependencies(self, path: Path) -> list[LibraryReference]:
        """Read the dylib load commands of a Mach-O file.

        Raises:
            FileError: If the file is missing or is not a Mach-O binary
        """
        if not is_valid_macho(path):
            raise FileError(f"Not a readable Mach-O binary: {path}")
        try:
            macho = MachO(str(path))
        except (ValueError, OSError, struct.error) as e:
            raise FileError(f"Cannot parse Mach-O binary {path}: {e}") from e

        refs: list[LibraryReference] = []
        seen: set[str] = set()
        encoding = sys.getfilesystemencoding()
        for header in macho.headers:
            for load_command, command, data in header.commands:
                if load_command.cmd not in DYLIB_COMMANDS:
                    continue
                name = data.split(b"\x00", 1)[0].decode(encoding)
                if name in seen:
                    continue
                seen.add(name)
                refs.append(
                    LibraryReference(
                        path=name,
                        compatibility_version=str(
                            command.compatibility_version
                        ),
                        current_version=str(command.current_version),
                    )
                )
        return refs

    def set_id(self, path: Path, new_id: str) -> None:
        self.run_command(["install_name_tool", "-id", new_id, str(path)])

    def change(self, path: Path, old: str, new: str) -> None:
        self.run_command(
            ["install_name_tool", "-change", old, new, str(path)]
        )

    def sign(self, path: Path) -> None:
        """Re-apply an ad-hoc signature invalidated by an install name edit."""
        self.run_command(["codesign", "--force", "--sign", "-", str(path)])


class WritableFile:
    """Temporarily grant the owner write permission on a file.

    The original mode bits are restored when the block exits, whether or
    not it raised.

    Example:
        with WritableFile(lib_path):
            editor.set_id(lib_path, new_id)
    """

    def __init__(self, path: Pathlike):
        self.path = Path(path)
        self.original_mode: int | None = None
        self.log = logging.getLogger(self.__class__.__name__)

    def __enter__(self) -> Path:
        try:
            self.original_mode = stat.S_IMODE(self.path.stat().st_mode)
            self.path.chmod(self.original_mode | stat.S_IWUSR)
        except OSError as e:
            raise FileError(
                f"Cannot make {self.path} writable: {e}"
            ) from e
        return self.path

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.original_mode is None or not self.path.exists():
            return
        try:
            self.path.chmod(self.original_mode)
        except OSError as e:
            # an error raised inside the block takes precedence
            if exc is None:
                raise FileError(
                    f"Cannot restore mode of {self.path}: {e}"
                ) from e
            self.log.warning("Cannot restore mode of %s: %s", self.path, e)


# ----------------------------------------------------------------------------
# Library relocation


def executable_relative(binary_dir: Pathlike, dest_dir: Pathlike) -> str:
    """Express dest_dir as an @executable_path token seen from binary_dir.

    >>> executable_relative("/a/App.app/Contents/MacOS", "/a/App.app/Contents/lib")
    '@executable_path/../lib'
    """
    rel = os.path.relpath(Path(dest_dir).absolute(), Path(binary_dir).absolute())
    if rel == os.curdir:
        return EXECUTABLE_PATH_TOKEN
    return f"{EXECUTABLE_PATH_TOKEN}/{Path(rel).as_posix()}"


class Relocator:
    """Copies staged dylibs into a bundle and rewrites install names.

    Each library referenced from under ``staging_root`` is copied into
    ``dest_dir`` once, the referencing binary is pointed at the copy with
    an ``@executable_path`` relative path, and the copy is processed in
    turn. References outside the staging root are left alone.

    Libraries are tracked by basename only: a second, distinct library
    with an already-copied basename is assumed identical and is neither
    copied nor descended into.

    Args:
        staging_root: Directory holding the pre-built libraries
        dest_dir: Directory inside the bundle receiving the copies
        link_editor: Link metadata tool (default: MachOLinkEditor)
        codesign: Ad-hoc sign each binary after editing it

    Example:
        relocator = Relocator("/opt/emacs-deps", "Emacs.app/Contents/MacOS/lib")
        relocator.relocate("Emacs.app/Contents/MacOS/Emacs")
    """

    def __init__(
        self,
        staging_root: Pathlike,
        dest_dir: Pathlike,
        link_editor: LinkEditor | None = None,
        codesign: bool = False,
    ):
        self.staging_root = Path(staging_root)
        self.dest_dir = Path(dest_dir)
        self.link_editor = link_editor or MachOLinkEditor()
        self.codesign = codesign
        # basename -> original path of every library copied into dest_dir
        self.visited: dict[str, Path] = {}
        self.copied: list[Path] = []
        self.log = logging.getLogger(self.__class__.__name__)

        if not self.staging_root.is_absolute():
            raise ConfigurationError(
                f"Staging root must be an absolute path: {self.staging_root}"
            )

    def is_in_scope(self, path: str) -> bool:
        """Check whether a referenced path lives under the staging root."""
        candidate = Path(path)
        return candidate.is_absolute() and candidate.is_relative_to(
            self.staging_root
        )

    def relocate(
        self, binary: Pathlike, rel_path_to_dest: str | None = None
    ) -> None:
        """Relocate the staged dependencies of binary, recursively.

        Args:
            binary: The executable or library to fix
            rel_path_to_dest: Install-name prefix for relocated libraries;
                computed from binary's directory on the top-level call

        Raises:
            CommandError: If the link editor fails
            FileError: If a staged dependency is missing
        """
        binary = Path(binary)
        if rel_path_to_dest is None:
            rel_path_to_dest = executable_relative(binary.parent, self.dest_dir)
            self.log.info(
                "Relocating libraries of %s into %s (%s)",
                binary,
                self.dest_dir,
                rel_path_to_dest,
            )

        edited = False
        for ref in self.link_editor.dependencies(binary):
            if not self.is_in_scope(ref.path):
                self.log.debug("leaving %s in %s", ref.path, binary.name)
                continue

            basename = ref.basename
            if basename == binary.name:
                new_id = str(self.dest_dir.absolute() / basename)
                self.log.debug("id %s -> %s", binary.name, new_id)
                with WritableFile(binary):
                    self.link_editor.set_id(binary, new_id)
                edited = True
                continue

            new_path = f"{rel_path_to_dest}/{basename}"
            self.log.debug("%s: %s -> %s", binary.name, ref.path, new_path)
            with WritableFile(binary):
                self.link_editor.change(binary, ref.path, new_path)
            edited = True

            if self._already_relocated(basename, Path(ref.path)):
                continue
            copy = self._copy(Path(ref.path))
            self.relocate(copy, rel_path_to_dest)

        if edited and self.codesign:
            with WritableFile(binary):
                self.link_editor.sign(binary)

    def _already_relocated(self, basename: str, source: Path) -> bool:
        if basename in self.visited:
            previous = self.visited[basename]
            if previous != source:
                self.log.warning(
                    "%s already relocated from %s; skipping %s",
                    basename,
                    previous,
                    source,
                )
            return True
        return (self.dest_dir / basename).exists()

    def _copy(self, source: Path) -> Path:
        if not source.is_file():
            raise FileError(f"Cannot find staged library {source}")
        try:
            self.dest_dir.mkdir(parents=True, exist_ok=True)
            target = self.dest_dir / source.name
            shutil.copy2(source, target)
        except OSError as e:
            raise FileError(f"Failed to copy {source}: {e}") from e
        self.visited[source.name] = source
        self.copied.append(target)
        self.log.info("Copied %s", source.name)
        return target


def relocate(
    binary: Pathlike,
    staging_root: Pathlike,
    dest_dir: Pathlike,
    link_editor: LinkEditor | None = None,
) -> list[Path]:
    """Relocate the staged dylibs of binary into dest_dir.

    Returns:
        The library files copied into dest_dir
    """
    relocator = Relocator(staging_root, dest_dir, link_editor=link_editor)
    relocator.relocate(binary)
    return relocator.copied


# ----------------------------------------------------------------------------
# Platform rules and build options


@dataclass(frozen=True)
class PlatformInfo:
    """Architecture and macOS version of the machine running the build."""

    machine: str
    os_version: str


def detect_platform() -> PlatformInfo:
    machine = platform.machine()
    if machine == "aarch64":
        machine = "arm64"
    return PlatformInfo(machine=machine, os_version=platform.mac_ver()[0])


def version_tuple(version: str) -> tuple[int, ...]:
    """'10.14.6' -> (10, 14, 6); non-numeric parts are dropped."""
    return tuple(int(p) for p in version.split(".") if p.isdigit())


@dataclass(frozen=True)
class PlatformRule:
    """One row of the platform compatibility table.

    ``predicate(arch, os_version, machine)`` selects the rule; ``overrides``
    sets any of: min_os, extra_cflags, host, build.
    """

    description: str
    predicate: Callable[[str, str, str], bool]
    overrides: Mapping[str, str]


PLATFORM_RULES: tuple[PlatformRule, ...] = (
    PlatformRule(
        "32-bit Intel builds target Snow Leopard",
        lambda arch, os_version, machine: arch == "i386",
        {
            "min_os": "10.6",
            "extra_cflags": "-arch i386",
            "host": "i386-apple-darwin",
            "build": "x86_64-apple-darwin",
        },
    ),
    PlatformRule(
        "Intel builds on Mojave or later stay compatible with El Capitan",
        lambda arch, os_version, machine: arch == "x86_64"
        and version_tuple(os_version) >= (10, 14),
        {"min_os": "10.11"},
    ),
    PlatformRule(
        "Apple Silicon starts at Big Sur",
        lambda arch, os_version, machine: arch == "arm64",
        {"min_os": "11.0"},
    ),
    PlatformRule(
        "Intel cross-build on Apple Silicon",
        lambda arch, os_version, machine: arch == "x86_64"
        and machine == "arm64",
        {
            "extra_cflags": "-arch x86_64",
            "host": "x86_64-apple-darwin",
            "build": "aarch64-apple-darwin",
        },
    ),
    PlatformRule(
        "Apple Silicon cross-build on Intel",
        lambda arch, os_version, machine: arch == "arm64"
        and machine == "x86_64",
        {
            "extra_cflags": "-arch arm64",
            "host": "aarch64-apple-darwin",
            "build": "x86_64-apple-darwin",
        },
    ),
)


def resolve_platform(
    arch: str,
    os_version: str,
    machine: str,
    rules: Iterable[PlatformRule] = PLATFORM_RULES,
) -> dict[str, str]:
    """Apply every matching rule in order; later rules win per key."""
    settings: dict[str, str] = {}
    for rule in rules:
        if rule.predicate(arch, os_version, machine):
            logging.getLogger("emacsbuild").debug("rule: %s", rule.description)
            settings.update(rule.overrides)
    return settings


@dataclass(frozen=True)
class BuildOptions:
    """Settings threaded through a single build."""

    arch: str
    cc: str = DEFAULT_CC
    extra_cflags: str | None = None
    host: str | None = None
    build: str | None = None
    min_os: str | None = None
    os_version: str = ""
    jobs: int | None = None
    extra_configure_flags: tuple[str, ...] = ()
    codesign: bool = True

    @property
    def target_os(self) -> str:
        """The minimum OS when one applies, else the build machine's OS."""
        return self.min_os or self.os_version

    @property
    def lib_dir_suffix(self) -> str:
        return f"{self.arch}-{self.target_os.replace('.', '_')}"

    @property
    def lib_dir_name(self) -> str:
        return f"lib-{self.lib_dir_suffix}"


def make_options(
    arch: str,
    os_version: str,
    machine: str,
    cc: str = DEFAULT_CC,
    jobs: int | None = None,
    extra_configure_flags: Iterable[str] = (),
    codesign: bool = True,
    rules: Iterable[PlatformRule] = PLATFORM_RULES,
) -> BuildOptions:
    """Derive build options for arch from the platform rule table."""
    if arch not in ARCHITECTURES:
        raise ConfigurationError(
            f"Unknown architecture '{arch}' (expected one of "
            f"{', '.join(ARCHITECTURES)})"
        )
    settings = resolve_platform(arch, os_version, machine, rules)
    return BuildOptions(
        arch=arch,
        cc=cc,
        extra_cflags=settings.get("extra_cflags"),
        host=settings.get("host"),
        build=settings.get("build"),
        min_os=settings.get("min_os"),
        os_version=os_version,
        jobs=jobs,
        extra_configure_flags=tuple(extra_configure_flags),
        codesign=codesign,
    )


# ----------------------------------------------------------------------------
# Source version and output naming


@dataclass(frozen=True)
class SourceVersion:
    version: str
    trunk: bool


def parse_source_version(tarball: Pathlike) -> SourceVersion:
    """Extract the version from a source tarball file name.

    Raises:
        VersionError: If the name matches neither a release nor a
            dated snapshot
    """
    name = Path(tarball).name
    match = SNAPSHOT_PATTERN.match(name)
    if match:
        return SourceVersion(match.group(1), trunk=True)
    match = RELEASE_PATTERN.match(name)
    if match:
        return SourceVersion(match.group(1), trunk=False)
    raise VersionError(f"Cannot find a version in source tarball name: {name}")


def output_base_name(
    kind: str,
    version: str,
    arch: str,
    target_os: str,
    extra_rev: str | None = None,
) -> str:
    """Compose e.g. 'Emacs-29.1-10.11-x86_64' or 'Emacs-pretest-30.0.91-2-11.0-arm64'."""
    label = "Emacs-" if kind == "release" else f"Emacs-{kind}-"
    rev = f"-{extra_rev}" if extra_rev else ""
    return f"{label}{version}{rev}-{target_os}-{arch}"


# ----------------------------------------------------------------------------
# Build environment and dependency provider


def _prepend_search_path(entry: str, current: str | None) -> str:
    return f"{entry}{os.pathsep}{current}" if current else entry


@dataclass(frozen=True)
class BuildEnvironment:
    """Environment variables handed to every build subprocess.

    Built from a base mapping (the calling process's environment by
    default) without modifying it.
    """

    variables: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def for_staging_root(
        cls,
        staging_root: Pathlike,
        compiler: str,
        base: Mapping[str, str] | None = None,
    ) -> "BuildEnvironment":
        staging_root = Path(staging_root)
        env = dict(os.environ if base is None else base)
        env["PATH"] = _prepend_search_path(
            str(staging_root / "bin"), env.get("PATH")
        )
        env["PKG_CONFIG_PATH"] = _prepend_search_path(
            str(staging_root / "lib" / "pkgconfig"), env.get("PKG_CONFIG_PATH")
        )
        env["CC"] = compiler
        return cls(env)

    def as_dict(self) -> dict[str, str]:
        return dict(self.variables)


class DependencyProvider:
    """The staging root of pre-built third-party libraries.

    Args:
        root: The staging root
        prepare_command: Optional command that creates or updates the
            staging root (e.g. "./prepare-deps.sh ensure")
        dry_run: If True, only log what would be done
    """

    def __init__(
        self,
        root: Pathlike,
        prepare_command: str | None = None,
        dry_run: bool = False,
    ):
        self.root = Path(root)
        self.prepare_command = prepare_command
        self.dry_run = dry_run
        self.sources_dir = self.root / "sources"
        self.log = logging.getLogger(self.__class__.__name__)

    def ensure(self) -> None:
        """Bring the staging root up to date.

        Raises:
            CommandError: If the prepare command fails
            FileError: If the staging root has no lib directory afterwards
        """
        if self.prepare_command:
            self.log.info("Preparing dependencies in %s", self.root)
            run_command(
                shlex.split(self.prepare_command),
                dry_run=self.dry_run,
                log=self.log,
                capture=False,
            )
        if self.dry_run:
            return
        if not (self.root / "lib").is_dir():
            raise FileError(
                f"Staging root {self.root} has no lib directory"
            )

    def export_sources(self, dest_dir: Pathlike) -> list[Path]:
        """Copy the original source archives of the staged libraries.

        Returns:
            The copied archive paths
        """
        dest_dir = Path(dest_dir)
        if not self.sources_dir.is_dir():
            raise FileError(
                f"No dependency sources found in {self.sources_dir}"
            )
        if self.dry_run:
            self.log.info(
                "[DRY RUN] Would copy sources from %s to %s",
                self.sources_dir,
                dest_dir,
            )
            return []
        try:
            dest_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FileError(f"Cannot create {dest_dir}: {e}") from e
        exported = []
        for archive in sorted(self.sources_dir.iterdir()):
            if not archive.is_file():
                continue
            try:
                shutil.copy2(archive, dest_dir / archive.name)
            except OSError as e:
                raise FileError(f"Failed to copy {archive}: {e}") from e
            exported.append(dest_dir / archive.name)
        self.log.info("Exported %d source archives", len(exported))
        return exported


# ----------------------------------------------------------------------------
# Build orchestration


def extract_source(
    tarball: Pathlike,
    work_dir: Pathlike,
    dry_run: bool = False,
) -> Path:
    """Untar a source tarball into work_dir and return the source tree.

    The source tree is the archive's single top-level directory, which
    need not match the tarball name (emacs-29.4-rc1.tar.gz unpacks to
    emacs-29.4).

    Raises:
        CommandError: If tar fails
        FileError: If the archive does not hold exactly one top-level
            directory
    """
    log = logging.getLogger("emacsbuild")
    tarball = Path(tarball)
    work_dir = Path(work_dir)
    if dry_run:
        source_dir = work_dir / re.sub(r"\.tar(\.\w+)?$", "", tarball.name)
        log.info("[DRY RUN] Would extract %s to %s", tarball.name, source_dir)
        return source_dir

    listing = run_command(["tar", "-tf", str(tarball.absolute())], log=log)
    top_level = set()
    for member in listing.splitlines():
        name = member.removeprefix("./").strip("/")
        if name and name != ".":
            top_level.add(name.split("/", 1)[0])
    if len(top_level) != 1:
        raise FileError(
            f"{tarball.name} must hold exactly one top-level directory, "
            f"found {len(top_level)}"
        )
    source_dir = work_dir / top_level.pop()

    log.info("Extracting %s", tarball.name)
    run_command(
        ["tar", "-xf", str(tarball.absolute()), "-C", str(work_dir)],
        log=log,
    )
    if not source_dir.is_dir():
        raise FileError(f"{tarball.name} did not unpack to {source_dir}")
    return source_dir


class Builder:
    """Configures, compiles, relocates and archives one Emacs build.

    Args:
        source_dir: Unpacked Emacs source tree
        staging_root: Directory of pre-built third-party libraries
        base_output_name: Archive name without extension
        options: BuildOptions for this build
        output_dir: Where the finished archives are placed
        trunk: Source is a dated snapshot (runs autogen.sh if needed)
        verbose: Stream tool output instead of capturing it
        dry_run: Only log what would be done
        link_editor: Link metadata tool passed to the Relocator
        base_env: Environment the build environment is derived from

    Example:
        builder = Builder("emacs-29.1", "/opt/emacs-deps",
                          "Emacs-29.1-10.11-x86_64", options)
        archive = builder.build()
    """

    def __init__(
        self,
        source_dir: Pathlike,
        staging_root: Pathlike,
        base_output_name: str,
        options: BuildOptions,
        output_dir: Pathlike = ".",
        trunk: bool = False,
        verbose: bool = False,
        dry_run: bool = False,
        link_editor: LinkEditor | None = None,
        base_env: Mapping[str, str] | None = None,
    ):
        self.source_dir = Path(source_dir)
        self.staging_root = Path(staging_root)
        self.base_output_name = base_output_name
        self.options = options
        self.output_dir = Path(output_dir)
        self.trunk = trunk
        self.verbose = verbose
        self.dry_run = dry_run
        self.link_editor = link_editor
        self.log = logging.getLogger(self.__class__.__name__)

        self.environment = BuildEnvironment.for_staging_root(
            self.staging_root, self.compiler(), base=base_env
        )

        self.app_bundle = self.source_dir / APP_BUNDLE
        self.executable = self.app_bundle / APP_EXECUTABLE
        self.lib_dir = self.executable.parent / options.lib_dir_name

    def compiler(self) -> str:
        parts = [self.options.cc]
        if self.options.min_os:
            parts.append(f"-mmacosx-version-min={self.options.min_os}")
        if self.options.extra_cflags:
            parts.append(self.options.extra_cflags)
        return " ".join(parts)

    def configure_flags(self) -> list[str]:
        flags = [f"--enable-locallisppath={LOCALLISPPATH}", "--with-modules"]
        if self.options.host:
            flags.append(f"--host={self.options.host}")
        if self.options.build:
            flags.append(f"--build={self.options.build}")
        flags.extend(self.options.extra_configure_flags)
        return flags

    def run(self, command: list[str]) -> str:
        """Run a toolchain command in the source tree."""
        return run_command(
            command,
            dry_run=self.dry_run,
            log=self.log,
            env=self.environment.as_dict(),
            cwd=self.source_dir,
            capture=not self.verbose,
        )

    def compile(self) -> None:
        """Configure, clean, compile and install into nextstep/Emacs.app."""
        if self.trunk and not (self.source_dir / "configure").exists():
            self.log.info("Snapshot source has no configure script")
            self.run(["./autogen.sh"])

        self.log.info("Configuring with CC=%s", self.environment.variables["CC"])
        self.run(["./configure", *self.configure_flags()])
        self.run(["make", "clean"])

        make = ["make"]
        if self.options.jobs:
            make.append(f"-j{self.options.jobs}")
        self.log.info("Compiling")
        self.run(make)
        self.run(["make", "install"])

    def relocate_libraries(self) -> list[Path]:
        """Copy staged dylibs into the bundle next to the executable."""
        if self.dry_run:
            self.log.info(
                "[DRY RUN] Would relocate libraries of %s into %s",
                self.executable,
                self.lib_dir,
            )
            return []
        if not self.executable.is_file():
            raise FileError(f"Build produced no executable at {self.executable}")
        relocator = Relocator(
            self.staging_root,
            self.lib_dir,
            link_editor=self.link_editor
            or MachOLinkEditor(dry_run=self.dry_run),
            codesign=self.options.codesign,
        )
        relocator.relocate(self.executable)
        self.log.info("Relocated %d libraries", len(relocator.copied))
        return relocator.copied

    def archive(self) -> Path:
        """Compress the app bundle into <output_dir>/<base>.tar.bz2."""
        archive_name = f"{self.base_output_name}.tar.bz2"
        built = self.source_dir / archive_name
        final = self.output_dir / archive_name
        self.run(
            [
                "tar",
                "-cjf",
                archive_name,
                "-C",
                str(APP_BUNDLE.parent),
                APP_BUNDLE.name,
            ]
        )
        if self.dry_run:
            self.log.info("[DRY RUN] Would move %s to %s", built, final)
            return final
        self.output_dir.mkdir(parents=True, exist_ok=True)
        shutil.move(built, final)
        self.log.info("Created %s", final)
        return final

    def archive_extra_sources(self, provider: DependencyProvider) -> Path:
        """Tar the third-party source archives as <base>-extra-source.tar."""
        archive_name = f"{self.base_output_name}-extra-source.tar"
        final = self.output_dir / archive_name
        with tempfile.TemporaryDirectory(prefix="emacsbuild.") as tmp:
            staging = Path(tmp) / f"{self.base_output_name}-extra-source"
            provider.export_sources(staging)
            if not self.dry_run:
                self.output_dir.mkdir(parents=True, exist_ok=True)
            run_command(
                [
                    "tar",
                    "-cf",
                    str(final.absolute()),
                    "-C",
                    tmp,
                    staging.name,
                ],
                dry_run=self.dry_run,
                log=self.log,
            )
        self.log.info("Created %s", final)
        return final

    def build(self) -> Path:
        """Run every step in order; any failure aborts the build.

        Returns:
            Path to the application archive
        """
        self.log.info("Building %s", self.base_output_name)
        self.compile()
        self.relocate_libraries()
        return self.archive()


def build(
    source_dir: Pathlike,
    staging_root: Pathlike,
    base_output_name: str,
    options: BuildOptions,
    output_dir: Pathlike = ".",
    trunk: bool = False,
    verbose: bool = False,
    dry_run: bool = False,
) -> Path:
    """Build, relocate and archive Emacs from an unpacked source tree.

    This is a convenience function that creates a Builder instance and
    calls build() on it.

    Returns:
        Path to the created .tar.bz2 archive
    """
    builder = Builder(
        source_dir,
        staging_root,
        base_output_name,
        options,
        output_dir=output_dir,
        trunk=trunk,
        verbose=verbose,
        dry_run=dry_run,
    )
    return builder.build()


# ----------------------------------------------------------------------------
# Command-line interface


def _staging_root(args: argparse.Namespace, config: dict[str, object]) -> Path:
    value = (
        args.staging_root
        or os.environ.get(ENV_STAGING_ROOT)
        or get_config_value(config, "build", "staging_root")
        or DEFAULT_STAGING_ROOT
    )
    return Path(str(value)).expanduser().absolute()


def _jobs(args: argparse.Namespace, config: dict[str, object]) -> int | None:
    if args.parallel is not None:
        return args.parallel
    jobs = get_config_value(config, "build", "jobs")
    if jobs is None:
        return None
    if not isinstance(jobs, int) or isinstance(jobs, bool) or jobs < 1:
        raise ConfigurationError(f"[build] jobs must be a positive integer: {jobs!r}")
    return jobs


def _extra_configure_flags(config: dict[str, object]) -> list[str]:
    flags = get_config_value(config, "build", "extra_configure_flags", [])
    if not isinstance(flags, list) or not all(isinstance(f, str) for f in flags):
        raise ConfigurationError(
            "[build] extra_configure_flags must be a list of strings"
        )
    return flags


def _cmd_build(args: argparse.Namespace) -> Path:
    """Handle a build invocation."""
    setup_logging(args.verbose, not args.no_color)
    log = logging.getLogger("emacsbuild")

    config = load_config(Path(args.config) if args.config else None)
    tarball = Path(args.source)
    if not tarball.is_file():
        raise FileError(f"Source tarball does not exist: {tarball}")

    source_version = parse_source_version(tarball)
    host = detect_platform()
    arch = args.arch or host.machine
    options = make_options(
        arch,
        os_version=host.os_version,
        machine=host.machine,
        cc=str(get_config_value(config, "build", "cc", DEFAULT_CC)),
        jobs=_jobs(args, config),
        extra_configure_flags=_extra_configure_flags(config),
        codesign=not args.no_sign,
    )
    base_name = output_base_name(
        args.kind,
        source_version.version,
        options.arch,
        options.target_os,
        extra_rev=args.extra_rev,
    )
    log.info(
        "Emacs %s (%s) for %s -> %s",
        source_version.version,
        "snapshot" if source_version.trunk else "release",
        options.arch,
        base_name,
    )

    staging_root = _staging_root(args, config)
    output_dir = Path(
        args.output_dir
        or str(get_config_value(config, "build", "output_dir", "."))
    )
    prepare_command = get_config_value(config, "deps", "prepare_command")
    provider = DependencyProvider(
        staging_root,
        prepare_command=str(prepare_command) if prepare_command else None,
        dry_run=args.dry_run,
    )
    if not args.no_deps:
        provider.ensure()

    with tempfile.TemporaryDirectory(prefix="emacsbuild.") as tmp:
        work_dir = Path(args.work_dir) if args.work_dir else Path(tmp)
        if not args.dry_run:
            work_dir.mkdir(parents=True, exist_ok=True)
        source_dir = extract_source(tarball, work_dir, dry_run=args.dry_run)
        builder = Builder(
            source_dir,
            staging_root,
            base_name,
            options,
            output_dir=output_dir,
            trunk=source_version.trunk,
            verbose=args.verbose,
            dry_run=args.dry_run,
        )
        archive = builder.build()
        if not args.no_deps:
            builder.archive_extra_sources(provider)

    log.info("Created: %s", archive)
    return archive


def make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="emacsbuild",
        description="Build Emacs for macOS and bundle its shared libraries.",
        epilog=(
            "Examples:\n"
            "  emacsbuild emacs-29.1.tar.gz release\n"
            "  emacsbuild emacs-2024-03-15.tar.gz nightly -a arm64 -j 8\n"
            "  emacsbuild emacs-30.0.91.tar.xz pretest --extra-rev 2 --no-deps\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("source", help="Emacs source tarball")
    parser.add_argument(
        "kind",
        help="build kind; 'release' or a label such as 'pretest'",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="enable debug logging and show tool output",
    )
    parser.add_argument(
        "-a",
        "--arch",
        choices=ARCHITECTURES,
        help="target architecture (default: this machine)",
    )
    parser.add_argument(
        "-j",
        "--parallel",
        type=int,
        metavar="PROCS",
        help="number of parallel make jobs",
    )
    parser.add_argument(
        "--extra-rev",
        metavar="REV",
        help="extra revision appended to the version",
    )
    parser.add_argument(
        "--no-deps",
        action="store_true",
        help="skip preparing dependencies and bundling their sources",
    )
    parser.add_argument(
        "--staging-root",
        metavar="DIR",
        help=f"pre-built library root (or set {ENV_STAGING_ROOT})",
    )
    parser.add_argument(
        "--output-dir",
        metavar="DIR",
        help="directory for the finished archives (default: .)",
    )
    parser.add_argument(
        "--work-dir",
        metavar="DIR",
        help="unpack and build here instead of a temporary directory",
    )
    parser.add_argument(
        "--config",
        metavar="FILE",
        help="path to an emacsbuild.toml config file",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="show what would be done without doing it",
    )
    parser.add_argument(
        "--no-sign",
        action="store_true",
        help="disable ad-hoc codesigning of edited binaries",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="disable colored output",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    """Command line interface for emacsbuild."""
    parser = make_parser()
    args = parser.parse_args(argv)
    try:
        _cmd_build(args)
    except CommandError as e:
        logging.error(str(e))
        if e.output:
            logging.error("%s", e.output.rstrip())
        sys.exit(1)
    except BuildError as e:
        logging.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(130)


if __name__ == "__main__":
    main()
