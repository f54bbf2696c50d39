import secrets
from dataclasses import asdict
from html import escape
from typing import Any, Dict, List, Optional, Tuple

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import HTMLResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from prometheus_client.registry import REGISTRY, CollectorRegistry

import dmarc_report_analyzer
from dmarc_report_analyzer.ingestion_errors import ErrorKind, IngestionErrorLog
from dmarc_report_analyzer.poll_scheduler import PollScheduler
from dmarc_report_analyzer.report_decoder import encode
from dmarc_report_analyzer.report_store import ReportStore, StoreEntry


class Server:
    """Serves an ASGI app with uvicorn inside the running event loop.

    If a collector is given, it is registered for the lifetime of the server.
    """

    # pylint: disable=too-many-arguments
    def __init__(
        self,
        app: Any,
        listen_addr: str = "127.0.0.1",
        port: int = 8080,
        collector: Any = None,
        registry: CollectorRegistry = REGISTRY,
    ):
        self.collector = collector
        self.registry = registry
        config = uvicorn.Config(app, host=listen_addr, port=port, log_config=None)
        self.server = uvicorn.Server(config)
        self.host = config.host
        self.port = port
        self._main_loop = None

    async def __aenter__(self):
        if self.collector is not None:
            self.registry.register(self.collector)
        config = self.server.config
        if not config.loaded:
            config.load()
        self.server.lifespan = config.lifespan_class(config)
        await self.server.startup()
        self._main_loop = self.server.main_loop()
        return self

    async def __aexit__(self, exc_type, exc, traceback):
        self.server.should_exit = True
        await self._main_loop
        self._main_loop = None
        await self.server.shutdown()
        if self.collector is not None:
            self.registry.unregister(self.collector)


def basic_auth(credentials: Tuple[str, str]):
    username, password = (c.encode("utf-8") for c in credentials)
    security = HTTPBasic(realm="DMARC reports")

    def authenticate(given: HTTPBasicCredentials = Depends(security)) -> str:
        username_ok = secrets.compare_digest(given.username.encode("utf-8"), username)
        password_ok = secrets.compare_digest(given.password.encode("utf-8"), password)
        if not (username_ok and password_ok):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Incorrect username or password",
                headers={"WWW-Authenticate": "Basic"},
            )
        return given.username

    return authenticate


def report_overview(entry: StoreEntry) -> Dict[str, Any]:
    report = entry.report
    metadata = report.metadata
    return {
        "org_name": metadata.org_name,
        "report_id": metadata.report_id,
        "begin": metadata.date_range.begin.isoformat(),
        "end": metadata.date_range.end.isoformat(),
        "policy_domain": report.policy.domain,
        "header_from_domains": sorted(report.header_from_domains),
        "record_count": len(report.records),
        "message_count": report.message_count,
        "dmarc_compliant_count": sum(
            record.count for record in report.records if record.dmarc_compliant
        ),
        "has_count_mismatch": report.has_count_mismatch,
        "first_seen": entry.first_seen.isoformat(),
        "source": entry.source,
    }


# pylint: disable=too-many-locals
def create_app(
    *,
    store: ReportStore,
    error_log: IngestionErrorLog,
    credentials: Tuple[str, str],
    scheduler: Optional[PollScheduler] = None,
    registry: CollectorRegistry = REGISTRY,
) -> FastAPI:
    """Read-only view of the report store, every route requires HTTP Basic
    authentication with ``credentials``."""
    api = FastAPI(
        title="DMARC report analyzer",
        version=dmarc_report_analyzer.__version__,
        dependencies=[Depends(basic_auth(credentials))],
    )
    router = APIRouter(prefix="/api")

    def lookup(org_name: str, report_id: str) -> StoreEntry:
        entry = store.get(org_name, report_id)
        if entry is None:
            raise HTTPException(status_code=404, detail="Report not found")
        return entry

    @router.get("/summary")
    def summary(domain: Optional[str] = None):
        result = jsonable_encoder(store.summarize(domain))
        if scheduler is not None:
            result["poller"] = jsonable_encoder(
                {
                    "state": scheduler.state,
                    "last_success": scheduler.last_success,
                    "last_cycle": scheduler.last_cycle
                    and asdict(scheduler.last_cycle),
                }
            )
        return result

    @router.get("/reports")
    def reports(domain: Optional[str] = None) -> List[Dict[str, Any]]:
        entries = store.query_all() if domain is None else store.query_by_domain(domain)
        return [report_overview(entry) for entry in entries]

    # Report ids may contain slashes, so the xml route has to match first.
    @router.get("/reports/{org_name}/{report_id:path}/xml")
    def report_xml(org_name: str, report_id: str):
        return Response(
            content=encode(lookup(org_name, report_id).report),
            media_type="application/xml",
        )

    @router.get("/reports/{org_name}/{report_id:path}")
    def report(org_name: str, report_id: str):
        entry = lookup(org_name, report_id)
        return jsonable_encoder({**report_overview(entry), "report": entry.report})

    @router.get("/domains")
    def domains() -> List[str]:
        return list(store.domains())

    @router.get("/errors")
    def errors(kind: Optional[ErrorKind] = None):
        return {
            "totals": {k.value: count for k, count in error_log.totals().items()},
            "recent": jsonable_encoder(error_log.recent(kind)),
        }

    @api.get("/metrics", include_in_schema=False)
    def metrics():
        return Response(
            content=generate_latest(registry), media_type=CONTENT_TYPE_LATEST
        )

    @api.get("/", response_class=HTMLResponse)
    def overview():
        return render_overview(store)

    api.include_router(router)
    return api


def render_overview(store: ReportStore) -> str:
    summary = store.summarize()
    rows = "".join(
        "<tr>"
        f"<td>{escape(domain)}</td>"
        f"<td>{messages}</td>"
        f"<td>{len(store.query_by_domain(domain))}</td>"
        "</tr>"
        for domain, messages in sorted(summary.messages_by_domain.items())
    )
    latest = (
        summary.latest_report_end.isoformat() if summary.latest_report_end else "-"
    )
    return (
        "<!DOCTYPE html>"
        "<html><head><meta charset='utf-8'><title>DMARC reports</title></head>"
        "<body><h1>DMARC reports</h1>"
        f"<p>{summary.report_count} reports covering {summary.message_count} "
        f"messages, {summary.dmarc_compliant_count} DMARC compliant. "
        f"Newest report ends {escape(latest)}.</p>"
        "<table><thead><tr><th>Header from</th><th>Messages</th>"
        "<th>Reports</th></tr></thead>"
        f"<tbody>{rows}</tbody></table>"
        "</body></html>"
    )
