"""Tests for layered .env loading."""

import os

import pytest

from fieldkit.core.config import load_layered_env

KEYS = ("FIELDKIT_TEST_SHARED", "FIELDKIT_TEST_USER_ONLY", "FIELDKIT_TEST_PROJECT_ONLY")


@pytest.fixture(autouse=True)
def clean_keys():
    for key in KEYS:
        os.environ.pop(key, None)
    yield
    for key in KEYS:
        os.environ.pop(key, None)


@pytest.fixture
def env_files(tmp_path):
    user = tmp_path / "user.env"
    user.write_text("FIELDKIT_TEST_SHARED=user\nFIELDKIT_TEST_USER_ONLY=1\n")
    project = tmp_path / "project.env"
    project.write_text("FIELDKIT_TEST_SHARED=project\nFIELDKIT_TEST_PROJECT_ONLY=yes\n")
    return user, project


class TestLoadLayeredEnv:
    def test_project_overrides_user(self, env_files):
        user, project = env_files
        set_keys = load_layered_env(user_env_paths=[user], project_env_paths=[project])

        assert os.environ["FIELDKIT_TEST_SHARED"] == "project"
        assert os.environ["FIELDKIT_TEST_USER_ONLY"] == "1"
        assert os.environ["FIELDKIT_TEST_PROJECT_ONLY"] == "yes"
        assert set_keys == set(KEYS)

    def test_process_environment_wins(self, env_files):
        user, project = env_files
        os.environ["FIELDKIT_TEST_SHARED"] = "shell"

        set_keys = load_layered_env(user_env_paths=[user], project_env_paths=[project])

        assert os.environ["FIELDKIT_TEST_SHARED"] == "shell"
        assert "FIELDKIT_TEST_SHARED" not in set_keys

    def test_missing_files(self, tmp_path):
        assert load_layered_env(
            user_env_paths=[tmp_path / "nope.env"], project_env_paths=[tmp_path / ".env"]
        ) == set()

    def test_default_project_paths(self, tmp_path):
        (tmp_path / ".env").write_text("FIELDKIT_TEST_PROJECT_ONLY=from-dotenv\n")
        (tmp_path / ".env.local").write_text("FIELDKIT_TEST_PROJECT_ONLY=from-local\n")

        load_layered_env(project_dir=tmp_path, user_env_paths=[])

        assert os.environ["FIELDKIT_TEST_PROJECT_ONLY"] == "from-local"
