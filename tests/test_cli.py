"""Tests for the msp-sync command line."""

import asyncio

import pytest
from rich.console import Console
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool
from typer.testing import CliRunner

from msp_sync import cli
from msp_sync.core.store import SyncStore
from msp_sync.database import create_engine
from msp_sync.models import Member, Ticket
from tests.cw_helpers import FakeConnectWise, board, member, ticket

runner = CliRunner()


@pytest.fixture()
def cli_env(tmp_path, monkeypatch, cw_settings):
    """
    Point the CLI at a fresh SQLite file and the in-memory ConnectWise API.

    Every command calls ``asyncio.run`` with a new event loop, so the engine
    must not pool connections across commands.
    """
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}", poolclass=NullPool)
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    fake_cw = FakeConnectWise()
    fake_cw.set("/system/members", [member(1, "eng1"), member(3, "eng3")])
    fake_cw.set("/service/boards", [board(1, "HelpDesk (MS)")])
    fake_cw.set("/service/tickets", [ticket(100, 1, owner="eng1")])

    monkeypatch.setattr(cli, "_session_maker", lambda: session_maker)
    monkeypatch.setattr(cli, "_transport", fake_cw.transport)
    monkeypatch.setattr(cli, "console", Console(width=200))
    return session_maker, fake_cw


def count(session_maker, model):
    return asyncio.run(SyncStore(session_maker).count(model))


def test_run_syncs_and_exits_zero(cli_env):
    session_maker, _ = cli_env

    result = runner.invoke(cli.app, ["run"])

    assert result.exit_code == 0, result.output
    assert "Sync complete" in result.output
    assert count(session_maker, Member) == 1
    assert count(session_maker, Ticket) == 1


def test_second_run_is_skipped_then_forced(cli_env):
    runner.invoke(cli.app, ["run"])

    skipped = runner.invoke(cli.app, ["run"])
    assert skipped.exit_code == 0
    assert "Sync skipped" in skipped.output

    forced = runner.invoke(cli.app, ["run", "--force"])
    assert forced.exit_code == 0
    assert "Sync complete" in forced.output


def test_failed_stage_exits_one(cli_env):
    _, fake_cw = cli_env
    fake_cw.fail("/service/tickets")

    result = runner.invoke(cli.app, ["run"])

    assert result.exit_code == cli.EXIT_STAGE_FAILED
    assert "Sync failed" in result.output
    assert "tickets stage failed" in result.output


def test_missing_configuration_exits_two(cli_env, monkeypatch, cw_settings):
    monkeypatch.setattr(cw_settings, "cw_company_id", "")

    result = runner.invoke(cli.app, ["run"])

    assert result.exit_code == cli.EXIT_CONFIG_ERROR
    assert "CW_COMPANY_ID" in result.output


def test_status_shows_every_entity_type(cli_env):
    before = runner.invoke(cli.app, ["status"])
    assert before.exit_code == 0
    assert "never" in before.output
    assert "projectTickets" in before.output

    runner.invoke(cli.app, ["run"])
    after = runner.invoke(cli.app, ["status"])
    assert "success" in after.output
    assert "skip" in after.output


def test_truncated_fetch_is_not_reported_as_complete(cli_env, cw_settings, monkeypatch):
    session_maker, fake_cw = cli_env
    fake_cw.set("/service/tickets", [ticket(100, 1, owner="eng1"), ticket(101, 1, owner="eng1")])
    fake_cw.fail("/service/tickets", page=2)
    monkeypatch.setattr(cw_settings, "cw_page_size", 1)

    result = runner.invoke(cli.app, ["run"])

    assert result.exit_code == cli.EXIT_PARTIAL, result.output
    assert "Sync completed with 1 fetch warning(s)" in result.output
    assert "Sync complete\n" not in result.output
    assert count(session_maker, Ticket) == 1

    status = runner.invoke(cli.app, ["status"])
    assert "partial" in status.output


def test_run_selected_entity_types(cli_env):
    session_maker, fake_cw = cli_env

    result = runner.invoke(cli.app, ["run", "--entity", "members", "-e", "boards"])

    assert result.exit_code == 0, result.output
    assert "not requested" in result.output
    assert count(session_maker, Member) == 1
    assert count(session_maker, Ticket) == 0
    assert fake_cw.requests_for("/service/tickets") == []


def test_unknown_entity_type_is_a_usage_error(cli_env):
    _, fake_cw = cli_env

    result = runner.invoke(cli.app, ["run", "--entity", "widgets"])

    assert result.exit_code == 2
    assert fake_cw.requests == []
