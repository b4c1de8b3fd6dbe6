"""Tests for the skillflow command-line interface."""

import json

import httpx
import pytest

from skillflow import cli
from skillflow import config as config_module
from skillflow.runtime.capability import HttpCapabilityProvider

PIPELINE = {
    "id": "code-review",
    "nodes": [
        {
            "id": "in",
            "kind": "Input",
            "config": {"name": "code"},
            "connections": [{"target": "review"}],
        },
        {
            "id": "review",
            "kind": "Skill",
            "config": {"capability": "reviewer"},
            "connections": [{"target": "out"}],
        },
        {"id": "out", "kind": "Output", "config": {"name": "result"}},
    ],
}


@pytest.fixture(autouse=True)
def isolated(tmp_path, monkeypatch):
    monkeypatch.setattr(cli, "configure_logging", lambda **kwargs: None)
    monkeypatch.setattr(config_module, "SKILLFLOW_CONFIG_FILE", tmp_path / "missing.json")
    for name in config_module.ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def workflow_file(tmp_path):
    path = tmp_path / "workflow.json"
    path.write_text(json.dumps(PIPELINE))
    return path


def test_validate_valid(workflow_file, capsys):
    assert cli.main(["validate", str(workflow_file)]) == 0
    report = json.loads(capsys.readouterr().out)
    assert report == {"valid": True, "errors": [], "warnings": []}


def test_validate_invalid(tmp_path, capsys):
    path = tmp_path / "bad.json"
    path.write_text(json.dumps({"nodes": [{"id": "in", "kind": "Input"}]}))
    assert cli.main(["validate", str(path)]) == 1
    report = json.loads(capsys.readouterr().out)
    assert "Workflow must have at least one Output node" in report["errors"]


def test_missing_file(tmp_path, capsys):
    assert cli.main(["validate", str(tmp_path / "nope.json")]) == 2
    assert "Error" in capsys.readouterr().err


def test_plan(workflow_file, capsys):
    assert cli.main(["plan", str(workflow_file)]) == 0
    assert json.loads(capsys.readouterr().out)["plan"] == ["in", "review", "out"]

    assert cli.main(["plan", "--waves", str(workflow_file)]) == 0
    assert json.loads(capsys.readouterr().out)["plan"] == [["in"], ["review"], ["out"]]


def test_run_requires_backend(workflow_file, capsys):
    assert cli.main(["run", str(workflow_file)]) == 2
    assert "no capability backend configured" in capsys.readouterr().err


def test_run_rejects_invalid_input(workflow_file, capsys):
    args = ["run", str(workflow_file), "--capability-url", "http://skills.test", "-i", "{bad"]
    assert cli.main(args) == 2
    assert "--input is not valid JSON" in capsys.readouterr().err


def test_run_against_http_backend(workflow_file, monkeypatch, capsys):
    def handler(request):
        body = json.loads(request.content)
        return httpx.Response(200, json={"issues": [], "seen": body["input"]["input"]})

    def provider_factory(url, timeout):
        client = httpx.AsyncClient(base_url=url, transport=httpx.MockTransport(handler))
        return HttpCapabilityProvider(url, client=client)

    monkeypatch.setattr(cli, "HttpCapabilityProvider", provider_factory)
    monkeypatch.setenv("SKILLFLOW_CAPABILITY_URL", "http://skills.test")

    code = cli.main(["run", str(workflow_file), "--input", '{"code": "x = 1"}'])
    result = json.loads(capsys.readouterr().out)
    assert code == 0
    assert result["success"] is True
    assert result["output"] == {"result": {"issues": [], "seen": "x = 1"}}
