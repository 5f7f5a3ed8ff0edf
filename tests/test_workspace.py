import shutil

import httpx
import pytest

from crkd.errors import NetworkError
from crkd.workspace import (
    CommandRunner,
    FileOperations,
    FileSearch,
    GitService,
    PathAdjuster,
    UrlFetcher,
)

# ---------------------------------------------------------------------------
# URL fetching
# ---------------------------------------------------------------------------

def _fetcher(handler) -> UrlFetcher:
    return UrlFetcher(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

async def test_fetch_returns_body():
    fetcher = _fetcher(lambda request: httpx.Response(200, text="hello docs"))
    assert await fetcher.fetch("https://docs.io/page") == "hello docs"
    await fetcher.aclose()

async def test_fetch_error_status():
    fetcher = _fetcher(lambda request: httpx.Response(404, text="missing"))
    with pytest.raises(NetworkError, match="Network error: 404"):
        await fetcher.fetch("https://docs.io/missing")
    await fetcher.aclose()

async def test_fetch_transport_failure():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    fetcher = _fetcher(refuse)
    with pytest.raises(NetworkError) as exc_info:
        await fetcher.fetch("https://docs.io")
    assert str(exc_info.value) == "Network error: connection refused"
    assert isinstance(exc_info.value.__cause__, httpx.ConnectError)
    await fetcher.aclose()

# ---------------------------------------------------------------------------
# Filesystem and search
# ---------------------------------------------------------------------------

def test_file_operations_round_trip(tmp_path):
    files = FileOperations(tmp_path)
    target = files.write("a/b/c.txt", "content")
    assert target == (tmp_path / "a" / "b" / "c.txt").resolve()
    assert files.exists("a/b/c.txt")
    assert files.read("a/b/c.txt") == "content"

def test_list_files_requires_directory(tmp_path):
    with pytest.raises(NotADirectoryError):
        FileOperations(tmp_path).list_files("nowhere")

def test_search_skips_ignored_directories(tmp_path):
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "config").write_text("needle")
    (tmp_path / "notes.txt").write_text("hay\nneedle here\n")

    matches = FileSearch(tmp_path).find_by_content("needle", ".")
    assert [(m.line, m.content) for m in matches] == [(2, "needle here")]

def test_find_by_name_glob(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("")
    (tmp_path / "README.md").write_text("")

    found = FileSearch(tmp_path).find_by_name("*.py", ".")
    assert found == [str((tmp_path / "src" / "app.py").resolve())]

# ---------------------------------------------------------------------------
# Path adjustment
# ---------------------------------------------------------------------------

def test_adjust_path_existing_file(tmp_path):
    (tmp_path / "a.py").write_text("")
    assert PathAdjuster(tmp_path).adjust_path("a.py") == str((tmp_path / "a.py").resolve())

def test_adjust_path_matches_without_extension(tmp_path):
    (tmp_path / "lib").mkdir()
    (tmp_path / "lib" / "helpers.py").write_text("")
    adjusted = PathAdjuster(tmp_path).adjust_path("lib/helper")
    assert adjusted == str((tmp_path / "lib" / "helpers.py").resolve())

def test_adjust_path_below_threshold(tmp_path):
    (tmp_path / "completely_different_name.txt").write_text("")
    assert PathAdjuster(tmp_path).adjust_path("zz.py", threshold=0.9) is None

def test_adjust_path_refresh(tmp_path):
    adjuster = PathAdjuster(tmp_path)
    assert adjuster.adjust_path("models.py") is None
    (tmp_path / "model.py").write_text("")
    adjuster.refresh()
    assert adjuster.adjust_path("models.py") == str((tmp_path / "model.py").resolve())

# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

async def test_command_runner_captures_output(tmp_path):
    output = await CommandRunner(tmp_path).run("echo hello")
    assert output.exit_code == 0
    assert output.stdout.strip() == "hello"

async def test_command_runner_nonzero_exit(tmp_path):
    output = await CommandRunner(tmp_path).run("exit 3")
    assert output.exit_code == 3

async def test_command_runner_timeout(tmp_path):
    with pytest.raises(TimeoutError, match="Command timed out"):
        await CommandRunner(tmp_path, timeout=0.1).run("sleep 5")

# ---------------------------------------------------------------------------
# Git
# ---------------------------------------------------------------------------

@pytest.mark.skipif(shutil.which("git") is None, reason="git binary not available")
def test_git_diff_excludes_patterns(tmp_path):
    import git

    repo = git.Repo.init(tmp_path)
    with repo.config_writer() as config:
        config.set_value("user", "name", "Test")
        config.set_value("user", "email", "test@example.com")
    (tmp_path / "app.py").write_text("x = 1\n")
    (tmp_path / "package-lock.json").write_text("{}\n")
    repo.index.add(["app.py", "package-lock.json"])
    repo.index.commit("initial")

    (tmp_path / "app.py").write_text("x = 2\n")
    (tmp_path / "package-lock.json").write_text('{"changed": true}\n')

    service = GitService(tmp_path)
    full = service.diff()
    filtered = service.diff(exclude_patterns=["package-lock.json"])

    assert "package-lock.json" in full
    assert "app.py" in filtered
    assert "package-lock.json" not in filtered
