from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple

from aiohttp import web
from loguru import logger

RESOURCE_KINDS = ("jobs", "service_instances", "service_credential_bindings", "deployments")


def _errors_body(code: int, title: str, detail: str) -> Dict[str, Any]:
    return {"errors": [{"code": code, "title": title, "detail": detail}]}


class CloudControllerServer:
    """Scripted stand-in for the asynchronous resources of the Cloud Foundry V3 API.

    Every resource is given a list of payloads; each GET returns the next one and the
    last payload repeats forever after.
    """

    def __init__(self, access_token: str = "test-token"):
        self.access_token = access_token
        self.scripts: Dict[Tuple[str, str], List[Dict[str, Any]]] = {}
        self.request_counts: Dict[Tuple[str, str], int] = defaultdict(int)
        self.served_counts: Dict[Tuple[str, str], int] = defaultdict(int)
        self.pending_failures: List[int] = []
        self.runner: Optional[web.AppRunner] = None
        self.app = web.Application()
        self.app.router.add_get("/v3/{kind}/{guid}", self.handle_get)
        self.logger = logger

    def script(self, kind: str, guid: str, payloads: List[Dict[str, Any]]) -> None:
        if kind not in RESOURCE_KINDS:
            raise ValueError(f"Unknown resource kind: {kind}")
        if not payloads:
            raise ValueError("At least one payload is required")
        self.scripts[(kind, guid)] = payloads

    def script_job(self, guid: str, states: List[str], errors: Optional[List[Dict[str, Any]]] = None):
        payloads = [
            {"guid": guid, "operation": "space.apply_manifest", "state": state, "errors": [], "warnings": []}
            for state in states
        ]
        if errors:
            payloads[-1]["errors"] = errors
        self.script("jobs", guid, payloads)

    def script_last_operation(
        self, kind: str, guid: str, states: List[str], description: Optional[str] = None
    ):
        payloads = [
            {
                "guid": guid,
                "name": f"{kind}-{guid}",
                "type": "managed",
                "last_operation": {
                    "type": "create",
                    "state": state,
                    "description": description if index == len(states) - 1 else "",
                    "created_at": "2024-01-01T00:00:00Z",
                    "updated_at": "2024-01-01T00:00:00Z",
                },
            }
            for index, state in enumerate(states)
        ]
        self.script(kind, guid, payloads)

    def script_deployment(self, guid: str, reasons: List[str]):
        payloads = [
            {
                "guid": guid,
                "strategy": "rolling",
                "status": {
                    "value": "ACTIVE" if reason in ("DEPLOYING", "CANCELING") else "FINALIZED",
                    "reason": reason,
                    "details": {},
                },
            }
            for reason in reasons
        ]
        self.script("deployments", guid, payloads)

    def fail_next(self, count: int = 1, status: int = 503) -> None:
        """Makes the next ``count`` requests fail with ``status``"""
        self.pending_failures.extend([status] * count)

    async def handle_get(self, request: web.Request) -> web.Response:
        kind = request.match_info["kind"]
        guid = request.match_info["guid"]

        if request.headers.get("Authorization") != f"bearer {self.access_token}":
            self.logger.info("Returning 401 for missing or invalid token")
            return web.json_response(
                _errors_body(10002, "CF-NotAuthenticated", "Authentication error"), status=401
            )

        key = (kind, guid)
        self.request_counts[key] += 1

        if self.pending_failures:
            status = self.pending_failures.pop(0)
            self.logger.info(f"Returning injected {status} for {kind}/{guid}")
            return web.json_response(
                _errors_body(10001, "CF-ServiceUnavailable", "Injected failure"), status=status
            )

        payloads = self.scripts.get(key)
        if payloads is None:
            self.logger.info(f"Returning 404 for unknown {kind}/{guid}")
            return web.json_response(
                _errors_body(10010, "CF-ResourceNotFound", f"{kind} not found"), status=404
            )

        self.served_counts[key] += 1
        payload = payloads[min(self.served_counts[key], len(payloads)) - 1]
        self.logger.info(f"Returning {kind}/{guid} payload #{self.served_counts[key]}")
        return web.json_response(payload)

    async def start(self, port: int = 8080):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self) -> None:
        if self.runner is not None:
            await self.runner.cleanup()
