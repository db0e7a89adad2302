"""Read-only ledger status API.

Exposes the sequencer ledger to dashboards while an apply or destroy runs
in another process:
  GET /health                      → liveness
  GET /api/v1/ledger               → every record, ordered by (rank, id)
  GET /api/v1/ledger/{resource_id} → one record

The ledger is re-read on every request, so the API always reflects the
last persisted transition.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Callable

from fastapi import APIRouter, FastAPI
from fastapi.responses import JSONResponse

from ..errors import LedgerCorruption
from ..ledger import Ledger, LedgerRecord
from ..state_machine import ExecutionState

logger = logging.getLogger(__name__)

LedgerLoader = Callable[[], Ledger]


# ── Response helpers ──────────────────────────────────────────────────


def _record_response(record: LedgerRecord) -> dict:
    """Build a status payload from a ledger record (spec omitted)."""
    return {
        'id': record.id,
        'kind': record.kind,
        'state': record.state.value,
        'external_identity': record.external_identity,
        'rank': record.rank,
        'depends_on': list(record.depends_on),
        'last_error': record.last_error,
        'last_updated': record.last_updated.isoformat(),
    }


def _corruption_response(exc: LedgerCorruption) -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={'error': 'ledger_corrupt', 'detail': str(exc)},
    )


# ── Route factory ─────────────────────────────────────────────────────


def create_ledger_router(load_ledger: LedgerLoader) -> APIRouter:
    """Create the ledger status router.

    Args:
        load_ledger: Returns the current ledger. Called once per request.
    """
    router = APIRouter(tags=['ledger'])

    @router.get('/api/v1/ledger')
    async def list_records(state: str | None = None):
        """List ledger records, optionally filtered by state."""
        try:
            ledger = load_ledger()
        except LedgerCorruption as exc:
            return _corruption_response(exc)

        if state is not None:
            try:
                wanted = ExecutionState(state)
            except ValueError:
                return JSONResponse(
                    status_code=400,
                    content={
                        'error': 'invalid_state',
                        'detail': f'unknown state {state!r}',
                    },
                )
        records = [
            r for r in ledger.snapshot()
            if state is None or r.state is wanted
        ]
        counts = Counter(r.state.value for r in ledger.snapshot())
        return {
            'records': [_record_response(r) for r in records],
            'counts': dict(sorted(counts.items())),
        }

    @router.get('/api/v1/ledger/{resource_id}')
    async def get_record(resource_id: str):
        """Get the ledger record for one resource id."""
        try:
            ledger = load_ledger()
        except LedgerCorruption as exc:
            return _corruption_response(exc)

        record = ledger.get(resource_id)
        if record is None:
            return JSONResponse(
                status_code=404,
                content={
                    'error': 'not_found',
                    'detail': f'No ledger record for {resource_id!r}.',
                },
            )
        return _record_response(record)

    return router


def create_app(load_ledger: LedgerLoader) -> FastAPI:
    """Create the status API application."""
    app = FastAPI(title='gitops-sequencer status', docs_url=None, redoc_url=None)

    @app.get('/health')
    async def health():
        return {'status': 'ok'}

    app.include_router(create_ledger_router(load_ledger))
    return app
