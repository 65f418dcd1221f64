"""
CLI Tests.

Handler loading, argument parsing and the read-only commands.
"""

import json

import pytest

from src.jobqueue import FunctionHandler, HandlerResult, Job, JobHandler, PersistenceAdapter
from src.jobqueue.cli import build_registry, create_parser, load_handler, main


class EchoHandler(JobHandler):
    job_type = "echo"

    def execute(self, payload):
        return HandlerResult.ok(payload)


def shout(payload):
    return payload.upper()


class TestLoadHandler:
    def test_loads_handler_class(self):
        job_type, handler = load_handler(f"echo={__name__}:EchoHandler")

        assert job_type == "echo"
        assert isinstance(handler, EchoHandler)

    def test_loads_callable(self):
        registry = build_registry([f"shout={__name__}:shout"])

        handler = registry.resolve("shout")
        assert isinstance(handler, FunctionHandler)
        assert handler.execute("hi").output == "HI"

    @pytest.mark.parametrize(
        "entry",
        [
            "no-equals-sign",
            "echo=module_without_attr",
            "echo=no.such.module:thing",
            f"echo={__name__}:missing_attr",
        ],
    )
    def test_rejects_bad_entries(self, entry):
        with pytest.raises(ValueError):
            load_handler(entry)


class TestParser:
    def test_run_arguments(self):
        args = create_parser().parse_args(
            ["--db", "q.db", "run", "--handler", "a=m:f", "--handler", "b=m:g", "-w", "3"]
        )

        assert args.command == "run"
        assert args.db == "q.db"
        assert args.handler == ["a=m:f", "b=m:g"]
        assert args.workers == 3

    def test_list_rejects_unknown_status(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["list", "RUNNING"])


class TestCommands:
    def test_list_prints_jobs(self, temp_db_path, capsys, mock_clock):
        job = Job.create("email", payload="x", created_at=mock_clock.now())
        PersistenceAdapter(temp_db_path).create_job(job)

        assert main(["--db", temp_db_path, "list", "PENDING"]) == 0

        lines = capsys.readouterr().out.strip().splitlines()
        assert json.loads(lines[0])["job_id"] == job.job_id

    def test_stats_prints_metrics(self, temp_db_path, capsys, mock_clock):
        PersistenceAdapter(temp_db_path).create_job(Job.create("email", created_at=mock_clock.now()))

        assert main(["--db", temp_db_path, "stats"]) == 0

        metrics = json.loads(capsys.readouterr().out)
        assert metrics["pending_jobs"] == 1

    def test_run_with_bad_handler_exits(self, temp_db_path, monkeypatch):
        monkeypatch.setattr("src.jobqueue.cli.setup_logging", lambda *args, **kwargs: None)

        assert main(["--db", temp_db_path, "run", "--handler", "broken"]) == 2
