# bigfile/routers/chunked.py
from time import perf_counter
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi.responses import PlainTextResponse

from bigfile.core.logging_config import logger
from bigfile.core.settings import settings
from bigfile.observability.metrics import latency_hist
from bigfile.schemas.chunked import SessionStatusOut
from bigfile.services.storage import get_storage
from bigfile.services.upload_coordinator import OutcomeKind, UploadCoordinator, UploadOutcome

router = APIRouter(prefix="/minio", tags=["chunked-upload"])

# wire-codes van het chunked upload protocol
COMPLETE_VERIFIED = "-1"
COMPLETE_INTEGRITY_ERROR = "-2"

_coordinator: Optional[UploadCoordinator] = None


def get_coordinator() -> UploadCoordinator:
    global _coordinator
    if _coordinator is None:
        _coordinator = UploadCoordinator.from_settings(get_storage(), settings)
    return _coordinator


def encode_outcome(outcome: UploadOutcome) -> str:
    """``"<n>"`` volgende index, ``"-1"`` klaar + geverifieerd, ``"-2"`` klaar maar corrupt."""
    if outcome.kind is OutcomeKind.NEXT_INDEX:
        return str(outcome.next_index)
    if outcome.kind is OutcomeKind.VERIFIED:
        return COMPLETE_VERIFIED
    return COMPLETE_INTEGRITY_ERROR


@router.post("/uploadBigFile", response_class=PlainTextResponse)
def upload_big_file(
    file: UploadFile = File(...),
    slice_index: int = Form(..., alias="sliceIndex"),
    total_pieces: int = Form(..., alias="totalPieces"),
    file_name: str = Form(..., alias="fileName"),
    md5: str = Form(...),
    coordinator: UploadCoordinator = Depends(get_coordinator),
) -> PlainTextResponse:
    """
    Eén chunk van een grote upload. Antwoord (plain text):
      "<n>" -> stuur chunk n
      "-1"  -> samengevoegd en geverifieerd
      "-2"  -> samengevoegd, maar de md5 klopt niet (opnieuw beginnen)
    """
    t0 = perf_counter()
    try:
        data = file.file.read()
        outcome = coordinator.accept_chunk(
            md5,
            total_pieces,
            slice_index,
            data,
            settings.S3_BUCKET,
            file_name,
        )
        body = encode_outcome(outcome)
        logger.info(
            "upload_big_file",
            fingerprint=md5,
            slice_index=slice_index,
            total_pieces=total_pieces,
            result=body,
        )
        return PlainTextResponse(body)
    finally:
        latency_hist.labels(route="/minio/uploadBigFile").observe(perf_counter() - t0)


@router.get("/uploadBigFile/status", response_model=SessionStatusOut)
def upload_big_file_status(
    md5: str = Query(...),
    total_pieces: int = Query(..., alias="totalPieces"),
    coordinator: UploadCoordinator = Depends(get_coordinator),
) -> SessionStatusOut:
    status = coordinator.session_status(md5, total_pieces)
    return SessionStatusOut(
        fingerprint=status.fingerprint,
        total_chunks=status.total_chunks,
        missing=status.missing,
        next_index=status.next_index,
        state=status.state,
    )
