"""Tests for the python -m lettersync entrypoint."""
from unittest.mock import patch

from lettersync.__main__ import main


@patch("lettersync.__main__.uvicorn.run")
def test_serves_api_as_single_process(run):
    assert main([]) == 0
    run.assert_called_once()
    args, kwargs = run.call_args
    assert args == ("lettersync.api.main:app",)
    assert kwargs["workers"] == 1


@patch("lettersync.__main__.uvicorn.run")
def test_standalone_commands_are_gone(run):
    assert main(["export"]) == 2
    run.assert_not_called()
