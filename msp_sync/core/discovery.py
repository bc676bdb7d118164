"""Discovery of tickets and projects referenced only through time entries."""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Set

from msp_sync.core.schemas import TimeEntryRecord, ref_id

logger = logging.getLogger(__name__)


@dataclass
class DiscoveryResult:
    """Ids referenced by time entries."""
    project_ids: Set[int] = field(default_factory=set)
    ticket_ids: Set[int] = field(default_factory=set)

    def remainder(self, known_project_ids: Iterable[int], known_ticket_ids: Iterable[int]) -> "DiscoveryResult":
        """Ids not already produced by the primary queries."""
        return DiscoveryResult(
            project_ids=self.project_ids - set(known_project_ids),
            ticket_ids=self.ticket_ids - set(known_ticket_ids),
        )


def discover(time_entries: Iterable[TimeEntryRecord]) -> DiscoveryResult:
    """
    Collect every ticket and project id the time entries point at.

    Both the nested (``ticket.id``) and the flat (``ticketId``) reference
    forms are read; an entry carrying both contributes both.
    """
    result = DiscoveryResult()
    for entry in time_entries:
        result.ticket_ids.update(i for i in (ref_id(entry.ticket), entry.ticket_id) if i)
        result.project_ids.update(i for i in (ref_id(entry.project), entry.project_id) if i)

    logger.info(
        f"Discovered {len(result.ticket_ids)} ticket(s) and "
        f"{len(result.project_ids)} project(s) referenced by time entries"
    )
    return result
