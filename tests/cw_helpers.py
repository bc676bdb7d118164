"""
In-memory ConnectWise API used by the tests.

``FakeConnectWise.handler`` is plugged into ``httpx.MockTransport``. It
serves paginated collections, applies ``field in (...)``,
``manager/identifier="x"`` and ``inactiveFlag=false`` conditions, and can
be told to fail given pages.
"""

import re
from typing import Any, Dict, List, Optional, Tuple

import httpx


IN_CLAUSE = re.compile(r"([\w/]+) in \(([^)]*)\)")
AUDIT_ID = re.compile(r"\bid=(\d+)")
MANAGER_CLAUSE = re.compile(r'manager/identifier="([^"]*)"')


def _lookup(item: Dict[str, Any], path: str) -> Any:
    value: Any = item
    for part in path.split("/"):
        if not isinstance(value, dict):
            value = None
            break
        value = value.get(part)
    if value is None and path.endswith("/id"):
        # Flat form, e.g. member/id -> memberId
        value = item.get(f"{path[:-len('/id')]}Id")
    return value


class FakeConnectWise:
    def __init__(self, codebase: str = "v2024_1/"):
        self.codebase = codebase
        self.collections: Dict[str, List[Dict[str, Any]]] = {}
        self.audit_trails: Dict[int, List[Dict[str, Any]]] = {}
        # (resource, page) -> status code; page None fails every page
        self.failures: Dict[Tuple[str, Optional[int]], int] = {}
        self.requests: List[httpx.Request] = []

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def set(self, resource: str, items: List[Dict[str, Any]]) -> None:
        self.collections[resource] = items

    def fail(self, resource: str, page: Optional[int] = None, status: int = 500) -> None:
        self.failures[(resource, page)] = status

    def requests_for(self, resource: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(f"apis/3.0{resource}")]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if "/login/companyinfo/" in path:
            return httpx.Response(200, json={"Codebase": self.codebase, "CompanyName": "Acme"})

        if "/apis/3.0" not in path:
            return httpx.Response(404, json={"message": "Not found"})
        resource = path.split("/apis/3.0", 1)[1]

        params = request.url.params
        page = int(params.get("page", "1"))
        page_size = int(params.get("pageSize", "1000"))
        conditions = params.get("conditions") or ""

        for key in ((resource, page), (resource, None)):
            if key in self.failures:
                return httpx.Response(self.failures[key], json={"message": f"Simulated failure on page {page}"})

        if resource == "/system/auditTrail":
            match = AUDIT_ID.search(conditions)
            items = self.audit_trails.get(int(match.group(1)), []) if match else []
        else:
            items = self._filter(self.collections.get(resource, []), conditions)

        start = (page - 1) * page_size
        return httpx.Response(200, json=items[start:start + page_size])

    def _filter(self, items: List[Dict[str, Any]], conditions: str) -> List[Dict[str, Any]]:
        for field, values in IN_CLAUSE.findall(conditions):
            wanted = {int(v) for v in values.split(",") if v.strip()}
            items = [i for i in items if _lookup(i, field) in wanted]
        if "inactiveFlag=false" in conditions:
            items = [i for i in items if not i.get("inactiveFlag")]
        managers = set(MANAGER_CLAUSE.findall(conditions))
        if managers:
            items = [i for i in items if _lookup(i, "manager/identifier") in managers]
        return items


def member(id: int, identifier: str, inactive: bool = False) -> Dict[str, Any]:
    return {
        "id": id,
        "identifier": identifier,
        "firstName": identifier.capitalize(),
        "lastName": "Tester",
        "emailAddress": f"{identifier}@example.com",
        "inactiveFlag": inactive,
    }


def board(id: int, name: str) -> Dict[str, Any]:
    return {"id": id, "name": name}


def ticket(id: int, board_id: Optional[int], owner: Optional[str] = None, resources: Optional[str] = None) -> Dict[str, Any]:
    item: Dict[str, Any] = {
        "id": id,
        "summary": f"Ticket {id}",
        "status": {"name": "New"},
        "closedFlag": False,
        "dateEntered": "2024-03-01T09:00:00Z",
        "priority": {"name": "Priority 3 - Normal"},
        "company": {"name": "Acme"},
        "resources": resources,
        "_info": {"dateEntered": "2024-03-01T09:00:00Z"},
    }
    if board_id is not None:
        item["board"] = {"id": board_id, "name": f"Board {board_id}"}
    if owner is not None:
        item["owner"] = {"identifier": owner}
    return item


def time_entry(
    id: int,
    member_id: int,
    ticket_id: Optional[int] = None,
    project_id: Optional[int] = None,
    flat: bool = False,
    hours: float = 1.5,
) -> Dict[str, Any]:
    item: Dict[str, Any] = {
        "id": id,
        "hours": hours,
        "billableOption": "Billable",
        "notes": f"Worked on entry {id}",
        "timeStart": "2024-03-02T10:00:00Z",
        "timeEnd": "2024-03-02T11:30:00Z",
    }
    if flat:
        item["memberId"] = member_id
        if ticket_id is not None:
            item["ticketId"] = ticket_id
        if project_id is not None:
            item["projectId"] = project_id
    else:
        item["member"] = {"id": member_id}
        if ticket_id is not None:
            item["ticket"] = {"id": ticket_id}
        if project_id is not None:
            item["project"] = {"id": project_id}
    return item


def project(id: int, manager: str, status: str = "Open") -> Dict[str, Any]:
    return {
        "id": id,
        "name": f"Project {id}",
        "status": {"name": status},
        "company": {"name": "Acme"},
        "manager": {"identifier": manager, "name": manager.capitalize()},
        "board": {"name": "Projects"},
        "estimatedHours": 40,
        "actualHours": 12.5,
        "percentComplete": 30,
        "closedFlag": status == "Closed",
    }


def project_ticket(id: int, project_id: int) -> Dict[str, Any]:
    return {
        "id": id,
        "summary": f"Project ticket {id}",
        "project": {"id": project_id, "name": f"Project {project_id}"},
        "phase": {"id": 1, "name": "Build"},
        "board": {"id": 99, "name": "Projects"},
        "status": {"name": "In Progress"},
        "wbsCode": "1.1",
        "budgetHours": 8,
        "actualHours": 2,
        "dateEntered": "2024-03-01T09:00:00Z",
    }
