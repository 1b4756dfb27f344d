import stat
import tempfile
from pathlib import Path

import pytest

from emacsbuild import CommandError, LibraryReference


class FakeLinkEditor:
    """In-memory link editor keyed by file basename.

    ``graph`` maps a basename to the library paths its binary references,
    so an original under the staging root and its relocated copy report
    the same references.
    """

    def __init__(self, graph, fail_on=None):
        self.graph = graph
        self.fail_on = fail_on
        self.queries = []
        self.edits = []
        self.signed = []
        # mode bits of each file at the moment it was edited
        self.modes_during_edit = []

    def dependencies(self, path):
        self.queries.append(path.name)
        return [
            LibraryReference(p, "1.0.0", "1.2.3")
            for p in self.graph.get(path.name, [])
        ]

    def _edit(self, path, record):
        self.modes_during_edit.append(stat.S_IMODE(path.stat().st_mode))
        if self.fail_on == path.name:
            raise CommandError("install_name_tool", 1, "simulated failure")
        self.edits.append(record)

    def set_id(self, path, new_id):
        self._edit(path, ("id", path, new_id))

    def change(self, path, old, new):
        self._edit(path, ("change", path, old, new))

    def sign(self, path):
        self.signed.append(path.name)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdirname:
        yield Path(tmpdirname)


@pytest.fixture
def staging_root(temp_dir):
    """A staging root with three read-only libraries."""
    root = temp_dir / "stage"
    lib = root / "lib"
    lib.mkdir(parents=True)
    for name in ("libA.dylib", "libB.dylib", "libC.dylib"):
        path = lib / name
        path.write_bytes(name.encode())
        path.chmod(0o444)
    return root


@pytest.fixture
def app_executable(temp_dir):
    """An executable inside an app bundle layout."""
    macos = temp_dir / "Emacs.app" / "Contents" / "MacOS"
    macos.mkdir(parents=True)
    exe = macos / "Emacs"
    exe.write_bytes(b"emacs")
    exe.chmod(0o555)
    return exe


@pytest.fixture
def make_editor():
    return FakeLinkEditor
