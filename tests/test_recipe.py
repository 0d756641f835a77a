from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest

from habitat_bridge.config import HabitatConfig
from habitat_bridge.models import CacheVolume, ProjectRequirements, SkillRepo
from habitat_bridge.recipe import RecipeBuilder, RecipeFixes, Repair, cache_key, diagnose, is_local_reference


class DictSecrets:
    def __init__(self, values: dict[str, str]):
        self.values = values

    def get_secret(self, name: str) -> str | None:
        return self.values.get(name)


@pytest.fixture
def config() -> Any:
    with patch.dict("os.environ", {}, clear=True):
        yield HabitatConfig(_env_file=None)


@pytest.fixture
def builder(config: HabitatConfig) -> RecipeBuilder:
    return RecipeBuilder(config)


def _requirements(**kwargs: Any) -> ProjectRequirements:
    defaults: dict[str, Any] = {"project_type": "npm", "base_image": "node:20", "setup_commands": ["npm install"]}
    defaults.update(kwargs)
    return ProjectRequirements(**defaults)


def test_build_remote_repository(builder: RecipeBuilder) -> None:
    recipe = builder.build(_requirements(), None, "https://github.com/acme/app", 8123)

    assert recipe.base_image == "node:20"
    assert recipe.port == 8123
    assert recipe.entrypoint == "/opt/bridge-venv/bin/habitat-bridge-server --port 8123"
    assert recipe.source_mount is None
    assert recipe.cache_key == cache_key("https://github.com/acme/app")
    install, bridge, clone, setup = recipe.setup_commands
    assert "git" in install and "python3-venv" in install
    assert bridge.startswith("python3 -m venv /opt/bridge-venv")
    assert "clone --depth 1 https://github.com/acme/app /tmp/habitat-src" in clone
    assert "[ ! -d /workspace/.git ]" in clone
    assert setup == "(cd /workspace && npm install)"


def test_build_python_image_skips_python_prerequisites(builder: RecipeBuilder) -> None:
    requirements = _requirements(project_type="pip", base_image="python:3.11", setup_commands=[])
    recipe = builder.build(requirements, None, "https://github.com/acme/app", 8000)

    assert "python3-venv" not in recipe.setup_commands[0]
    assert "install -y -qq git" in recipe.setup_commands[0]


def test_environment_from_secrets(builder: RecipeBuilder) -> None:
    requirements = _requirements(env_var_names={"OPENAI_API_KEY", "MISSING_TOKEN"})
    secrets = DictSecrets({"OPENAI_API_KEY": "sk-1", "GITHUB_TOKEN": "ghp-1", "UNRELATED_KEY": "x"})

    recipe = builder.build(requirements, None, "https://github.com/acme/app", 8000, secrets)

    assert recipe.environment["OPENAI_API_KEY"] == "sk-1"
    assert recipe.environment["GITHUB_TOKEN"] == "ghp-1"
    assert "MISSING_TOKEN" not in recipe.environment
    assert "UNRELATED_KEY" not in recipe.environment
    assert "x-access-token" in recipe.setup_commands[2]
    assert "ghp-1" not in recipe.boot_script()
    assert recipe.redacted()["environment"]["OPENAI_API_KEY"] == "***"


def test_token_header_is_scoped_to_github(builder: RecipeBuilder) -> None:
    skill = SkillRepo(
        name="widget",
        source_location="https://gitlab.example.com/acme/widget",
        sandbox_path="/opt/widget",
    )
    secrets = DictSecrets({"GITHUB_TOKEN": "ghp-1"})

    recipe = builder.build(
        _requirements(skill_repos=[skill]), None, "https://gitlab.example.com/acme/app", 8000, secrets
    )
    clones = [c for c in recipe.setup_commands if "clone --depth 1" in c]

    assert len(clones) == 2
    for command in clones:
        assert "http.extraheader=" not in command
        assert '-c "http.https://github.com/.extraheader=Authorization: Basic' in command


def test_local_repository_is_mounted(builder: RecipeBuilder, tmp_path: Path) -> None:
    recipe = builder.build(_requirements(), None, str(tmp_path), 8000)

    assert recipe.source_mount == str(tmp_path.resolve())
    assert "file:///mnt/source" in recipe.setup_commands[2]
    assert is_local_reference(str(tmp_path))
    assert not is_local_reference("https://github.com/acme/app")


def test_skills_are_cloned(builder: RecipeBuilder) -> None:
    skill = SkillRepo(
        name="widget",
        source_location="https://github.com/acme/widget",
        sandbox_path="/opt/widget",
        apt_packages=["perl"],
        setup_commands=["make install"],
    )
    recipe = builder.build(_requirements(skill_repos=[skill]), None, "https://github.com/acme/app", 8000)

    assert "perl" in recipe.setup_commands[0]
    assert any("https://github.com/acme/widget /opt/widget" in c for c in recipe.setup_commands)
    assert "(cd /opt/widget && make install)" in recipe.setup_commands


def test_fixes_are_applied(builder: RecipeBuilder) -> None:
    fixes = RecipeFixes(
        extra_apt_packages={"jq"},
        removed_apt_packages={"imagemagick"},
        extra_setup_commands=["echo fixed"],
        base_image="ubuntu:24.04",
    )
    requirements = _requirements(apt_packages={"imagemagick"}, cache_volumes=[CacheVolume(name="c", mount_path="/c")])

    recipe = builder.build(requirements, fixes, "https://github.com/acme/app", 8000)

    assert recipe.base_image == "ubuntu:24.04"
    assert "jq" in recipe.setup_commands[0]
    assert "imagemagick" not in recipe.setup_commands[0]
    assert recipe.setup_commands[-1] == "echo fixed"
    assert recipe.cache_volumes == [CacheVolume(name="c", mount_path="/c")]


def test_analyzer_install_is_not_repeated(builder: RecipeBuilder) -> None:
    requirements = _requirements(
        base_image="ubuntu:22.04",
        apt_packages={"jq"},
        setup_commands=["apt-get update -qq && apt-get install -y -qq jq && rm -rf /var/lib/apt/lists/*"],
    )
    recipe = builder.build(requirements, None, "https://github.com/acme/app", 8000)

    assert sum("apt-get install" in c for c in recipe.setup_commands) == 1


def test_boot_script_ends_with_bridge(builder: RecipeBuilder) -> None:
    recipe = builder.build(_requirements(), None, "https://github.com/acme/app", 8000)
    script = recipe.boot_script()

    assert script.startswith("set -e\n")
    assert script.endswith("exec /opt/bridge-venv/bin/habitat-bridge-server --port 8000")
    assert "[habitat] step 1:" in script


@pytest.mark.parametrize(
    "signal,expected",
    [
        ("/bin/sh: 1: jq: not found", {"jq"}),
        ("bash: line 3: convert: command not found", {"imagemagick"}),
        ("zsh: command not found: ffmpeg", {"ffmpeg"}),
    ],
)
def test_diagnose_missing_binary(signal: str, expected: set[str]) -> None:
    repair = diagnose(signal)
    assert repair is not None
    assert repair.add_apt_packages == expected


def test_diagnose_unknown_package() -> None:
    repair = diagnose("E: Unable to locate package libfoo-dev")
    assert repair is not None
    assert repair.remove_apt_packages == {"libfoo-dev"}


def test_diagnose_node_missing() -> None:
    repair = diagnose("sh: 1: npm: not found")
    assert repair is not None
    assert repair.base_image == "node:20"


def test_diagnose_python_missing() -> None:
    repair = diagnose("/bin/sh: 1: python3: not found")
    assert repair is not None
    assert "python3-venv" in repair.add_apt_packages


def test_diagnose_no_evidence() -> None:
    assert diagnose("") is None
    assert diagnose("Segmentation fault") is None
    assert diagnose("sh: 1: frobnicate: not found") is None


def test_repair_apply_reports_change() -> None:
    fixes = RecipeFixes()
    repair = Repair(reason="x", add_apt_packages={"jq"})

    assert repair.apply(fixes) is True
    assert repair.apply(fixes) is False
    assert fixes.extra_apt_packages == {"jq"}

    Repair(reason="y", remove_apt_packages={"jq"}).apply(fixes)
    assert fixes.extra_apt_packages == set()
    assert Repair(reason="z", add_apt_packages={"jq"}).apply(fixes) is False
