"""Tests for reference discovery over time entries."""

from msp_sync.core.discovery import DiscoveryResult, discover
from msp_sync.core.schemas import TimeEntryRecord
from tests.cw_helpers import time_entry


def _entries(*items):
    return [TimeEntryRecord.model_validate(i) for i in items]


def test_discover_reads_nested_and_flat_references():
    entries = _entries(
        time_entry(1, 10, ticket_id=100),
        time_entry(2, 10, ticket_id=101, flat=True),
        time_entry(3, 10, project_id=200),
        time_entry(4, 10, project_id=201, flat=True),
        time_entry(5, 10),
        time_entry(6, 10, ticket_id=100, project_id=200),
    )

    result = discover(entries)

    assert result.ticket_ids == {100, 101}
    assert result.project_ids == {200, 201}


def test_discover_entry_with_both_forms_contributes_both():
    entry = TimeEntryRecord.model_validate({
        "id": 1,
        "member": {"id": 10},
        "ticket": {"id": 100},
        "ticketId": 102,
        "project": {"id": 200},
        "projectId": 202,
    })

    result = discover([entry])

    assert result.ticket_ids == {100, 102}
    assert result.project_ids == {200, 202}


def test_discover_empty():
    result = discover([])
    assert result == DiscoveryResult()


def test_remainder_subtracts_known_ids():
    result = DiscoveryResult(project_ids={1, 2, 3}, ticket_ids={10, 11})

    remainder = result.remainder([2], [10, 99])

    assert remainder.project_ids == {1, 3}
    assert remainder.ticket_ids == {11}
    # The original is left untouched
    assert result.project_ids == {1, 2, 3}
