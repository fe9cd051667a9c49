import os
import shutil
import subprocess

import pytest

from blame_report import ProgressReporter

HASH_A = "3f2c9e1b7d4a5c6e8f90a1b2c3d4e5f6a7b8c9d0"
HASH_B = "9b8a7c6d5e4f3a2b1c0d9e8f7a6b5c4d3e2f1a0b"

# 2023-11-14 22:13:20 UTC / 2023-11-16 02:00:00 UTC
TIME_A_AUTHOR = 1_700_000_000
TIME_A_COMMITTER = 1_700_100_000
# 2020-09-13 12:26:40 UTC
TIME_B = 1_600_000_000

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def metadata_block(
    author="Alice Smith",
    author_mail="<alice@example.com>",
    author_time=TIME_A_AUTHOR,
    committer="Bob Jones",
    committer_mail="<bob@example.com>",
    committer_time=TIME_A_COMMITTER,
    summary="initial commit",
    boundary=False,
    previous=None,
    filename="app.js",
):
    """Porcelain metadata lines for one commit, without header or content"""
    lines = [
        f"author {author}",
        f"author-mail {author_mail}",
        f"author-time {author_time}",
        "author-tz +0000",
        f"committer {committer}",
        f"committer-mail {committer_mail}",
        f"committer-time {committer_time}",
        "committer-tz +0000",
    ]
    if summary is not None:
        lines.append(f"summary {summary}")
    if boundary:
        lines.append("boundary")
    if previous is not None:
        lines.append(f"previous {previous}")
    if filename is not None:
        lines.append(f"filename {filename}")
    return lines


@pytest.fixture
def quiet_reporter():
    return ProgressReporter(quiet=True)


@pytest.fixture
def single_commit_blame():
    """Three lines, all from one commit"""
    lines = [f"{HASH_A} 1 1 3"]
    lines += metadata_block()
    lines += [
        "\tconst a = 1;",
        f"{HASH_A} 2 2",
        "\tconst b = 2;",
        f"{HASH_A} 3 3",
        "\tconst c = a + b;",
    ]
    return "\n".join(lines) + "\n"


@pytest.fixture
def two_commit_blame():
    """Root commit B owns lines 1 and 3, commit A owns line 2"""
    lines = [f"{HASH_B} 1 1 1"]
    lines += metadata_block(
        author="Carol White",
        author_mail="<carol@example.com>",
        author_time=TIME_B,
        committer="Carol White",
        committer_mail="<carol@example.com>",
        committer_time=TIME_B,
        summary="first",
        boundary=True,
        filename="lib.js",
    )
    lines += ["\tline one", f"{HASH_A} 2 2 1"]
    lines += metadata_block(previous=f"{HASH_B} lib.js", filename="lib.js")
    lines += ["\tline two", f"{HASH_B} 3 3 1", "\tline three"]
    return "\n".join(lines) + "\n"


@pytest.fixture
def git_repo(tmp_path):
    """
    Repository with two commits at fixed times:
    1. Alice adds app.js (3 lines), lib/util.js and README.md
    2. Bob authors, Carol commits, a change to line 2 of app.js
    """
    repo = tmp_path / "repo"
    repo.mkdir()

    def run(*args, env=None):
        subprocess.run(
            ["git", "-C", str(repo)] + list(args),
            check=True,
            capture_output=True,
            env=env,
        )

    def commit(message, author, committer, author_time, committer_time):
        env = dict(
            os.environ,
            GIT_AUTHOR_NAME=author[0],
            GIT_AUTHOR_EMAIL=author[1],
            GIT_AUTHOR_DATE=f"{author_time} +0000",
            GIT_COMMITTER_NAME=committer[0],
            GIT_COMMITTER_EMAIL=committer[1],
            GIT_COMMITTER_DATE=f"{committer_time} +0000",
        )
        run("add", ".")
        run("commit", "-m", message, env=env)

    run("init")
    run("config", "user.email", "tester@test.com")
    run("config", "user.name", "Tester")
    run("config", "commit.gpgsign", "false")

    alice = ("Alice Smith", "alice@example.com")
    bob = ("Bob Jones", "bob@example.com")
    carol = ("Carol White", "carol@example.com")

    (repo / "app.js").write_text("one\ntwo\nthree\n", encoding="utf-8")
    (repo / "lib").mkdir()
    (repo / "lib" / "util.js").write_text("export const x = 1;\n", encoding="utf-8")
    (repo / "README.md").write_text("# App\n", encoding="utf-8")
    commit("initial", alice, alice, 1_700_000_000, 1_700_000_000)

    (repo / "app.js").write_text("one\nTWO\nthree\n", encoding="utf-8")
    commit("shout two", bob, carol, 1_700_100_000, 1_700_200_000)

    return str(repo)
