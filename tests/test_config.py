from __future__ import annotations

from pathlib import Path

import pytest

from conftest import write_file
from xci.config import load_config, parse_config, prepare_input_files
from xci.models import ConfigError, EventSpec


def test_load_config_defaults_when_file_is_missing(tmp_path: Path) -> None:
    config = load_config(tmp_path)

    assert config.engine == "act"
    assert config.runtime.container == "docker"
    assert config.runtime.architecture == "amd64"
    assert config.presets == {}
    assert config.path is None


def test_load_config_reads_camel_case_keys(tmp_path: Path) -> None:
    write_file(
        tmp_path / ".xci.yml",
        """
engine: act
runtime:
  container: podman
  architecture: arm64
  image:
    self-hosted: ghcr.io/acme/runner:latest
  platformMap:
    ubuntu-22.04: node:20-bookworm
env:
  CI: "true"
  RETRIES: 3
secretsFile: .secrets
defaultPreset: smoke
presets:
  smoke:
    jobs: [lint, test]
    event:
      name: pull_request
      payloadPath: .github/pr.json
    matrix: ["node:20"]
  nightly: {}
""",
    )

    config = load_config(tmp_path)

    assert config.path == tmp_path / ".xci.yml"
    assert config.runtime.container == "podman"
    assert config.runtime.architecture == "arm64"
    assert config.runtime.image == {"self-hosted": "ghcr.io/acme/runner:latest"}
    assert config.runtime.platform_map == {"ubuntu-22.04": "node:20-bookworm"}
    assert config.env == {"CI": "true", "RETRIES": "3"}
    assert config.secrets_file == ".secrets"
    assert config.default_preset == "smoke"
    smoke = config.presets["smoke"]
    assert smoke.job_ids == ("lint", "test")
    assert smoke.event == EventSpec("pull_request", ".github/pr.json")
    assert smoke.matrix == ("node:20",)
    assert config.presets["nightly"].job_ids == ()
    assert config.presets["nightly"].matrix is None


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        ({"engnie": "act"}, "config has unsupported keys"),
        ({"runtime": {"container": "lxc"}}, "runtime.container must be one of"),
        ({"runtime": {"platform_map": {}}}, "runtime has unsupported keys"),
        ({"env": {"FLAG": True}}, "env.FLAG must be a string"),
        ({"presets": {"smoke": {"jobs": "lint"}}}, "presets.smoke.jobs must be a list"),
        ({"presets": {"smoke": {"event": {}}}}, "presets.smoke.event.name is required"),
        ({"envFile": 3}, "envFile must be a string"),
        (["not", "a", "mapping"], "config must be a mapping"),
    ],
)
def test_parse_config_rejects_invalid_values(raw, message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        parse_config(raw)


def test_load_config_reports_invalid_yaml(tmp_path: Path) -> None:
    write_file(tmp_path / ".xci.yml", "runtime: [unclosed")

    with pytest.raises(ConfigError, match="Invalid YAML"):
        load_config(tmp_path)


def test_prepare_input_files_merges_file_and_inline_values(tmp_path: Path) -> None:
    (tmp_path / ".env").write_text("A=1", encoding="utf-8")
    config = parse_config(
        {
            "envFile": ".env",
            "env": {"B": "two\nlines"},
            "secrets": {"TOKEN": "s3cret"},
        }
    )
    run_dir = tmp_path / "runs" / "run-1"

    inputs = prepare_input_files(run_dir, config, cwd=tmp_path)

    assert inputs.vars_file is None
    assert Path(inputs.env_file).read_text(encoding="utf-8") == "A=1\nB=two\\nlines\n"
    assert Path(inputs.secrets_file).read_text(encoding="utf-8") == "TOKEN=s3cret\n"
    assert Path(inputs.secrets_file).parent == (run_dir / "inputs").resolve()


def test_prepare_input_files_requires_configured_sources(tmp_path: Path) -> None:
    config = parse_config({"secretsFile": "missing.secrets"})

    with pytest.raises(ConfigError, match="Configured secrets file not found: missing.secrets"):
        prepare_input_files(tmp_path / "run", config, cwd=tmp_path)


def test_prepare_input_files_without_inputs_writes_nothing(tmp_path: Path) -> None:
    inputs = prepare_input_files(tmp_path / "run", parse_config(None), cwd=tmp_path)

    assert (inputs.env_file, inputs.vars_file, inputs.secrets_file) == (None, None, None)
    assert list((tmp_path / "run" / "inputs").iterdir()) == []
