import hashlib

import pytest

from bigfile.routers.chunked import encode_outcome
from bigfile.services.upload_coordinator import UploadOutcome

UPLOAD_PATH = "/minio/uploadBigFile"
STATUS_PATH = "/minio/uploadBigFile/status"


def _post_chunk(client, fp, chunks, index, total=None, name="movie.bin", body=None):
    return client.post(
        UPLOAD_PATH,
        data={
            "sliceIndex": str(index),
            "totalPieces": str(len(chunks) if total is None else total),
            "fileName": name,
            "md5": fp,
        },
        files={"file": ("blob", chunks[index] if body is None else body, "application/octet-stream")},
    )


def test_encode_outcome():
    assert encode_outcome(UploadOutcome.next(4)) == "4"
    assert encode_outcome(UploadOutcome.verified()) == "-1"
    assert encode_outcome(UploadOutcome.integrity_error()) == "-2"


def test_full_upload_then_download(client, payload):
    data, chunks, fp = payload

    answers = [_post_chunk(client, fp, chunks, i) for i in range(3)]

    assert [r.status_code for r in answers] == [200, 200, 200]
    assert [r.text for r in answers] == ["1", "2", "-1"]
    assert answers[0].headers["content-type"].startswith("text/plain")

    r = client.get("/minio/download", params={"fileName": "movie.bin"})
    assert r.status_code == 200
    assert r.content == data


def test_resume_after_interruption(client, payload):
    _, chunks, fp = payload
    _post_chunk(client, fp, chunks, 0)

    # client weet niet meer waar hij was en begint opnieuw bij 0
    r = _post_chunk(client, fp, chunks, 0)
    assert r.text == "1"

    s = client.get(STATUS_PATH, params={"md5": fp, "totalPieces": 3})
    assert s.status_code == 200
    assert s.json() == {
        "fingerprint": fp,
        "total_chunks": 3,
        "missing": [1, 2],
        "next_index": 1,
        "state": "in_progress",
    }

    assert _post_chunk(client, fp, chunks, 1).text == "2"
    assert _post_chunk(client, fp, chunks, 2).text == "-1"
    assert client.get(STATUS_PATH, params={"md5": fp, "totalPieces": 3}).json()["state"] == "verified"


def test_corrupt_upload_answers_minus_two(client, payload):
    _, chunks, _ = payload
    fp = hashlib.md5(b"definitely not this file").hexdigest()

    answers = [_post_chunk(client, fp, chunks, i).text for i in range(3)]

    assert answers == ["1", "2", "-2"]
    assert client.get("/minio/download", params={"fileName": "movie.bin"}).status_code == 404


def test_retry_from_zero_after_minus_two(client, payload):
    data, chunks, fp = payload
    bad = b"\x00" * len(chunks[1])

    _post_chunk(client, fp, chunks, 0)
    _post_chunk(client, fp, chunks, 1, body=bad)
    assert _post_chunk(client, fp, chunks, 2).text == "-2"
    assert _post_chunk(client, fp, chunks, 2).text == "-2"

    answers = [_post_chunk(client, fp, chunks, i).text for i in range(3)]
    assert answers == ["1", "2", "-1"]
    assert client.get("/minio/download", params={"fileName": "movie.bin"}).content == data


@pytest.mark.parametrize("fp", ["xyz", "0" * 31, "g" * 32])
def test_bad_fingerprint_is_400(client, payload, fp):
    _, chunks, _ = payload
    r = _post_chunk(client, fp, chunks, 0)
    assert r.status_code == 400
    body = r.json()
    assert body["ok"] is False
    assert body["error"]["type"] == "InvalidChunkRequest"


def test_index_out_of_range_is_400(client):
    r = client.post(
        UPLOAD_PATH,
        data={"sliceIndex": "5", "totalPieces": "3", "fileName": "x", "md5": "a" * 32},
        files={"file": ("blob", b"x", "application/octet-stream")},
    )
    assert r.status_code == 400


def test_missing_form_field_is_422(client):
    r = client.post(
        UPLOAD_PATH,
        data={"sliceIndex": "0", "totalPieces": "3", "fileName": "x"},
        files={"file": ("blob", b"x", "application/octet-stream")},
    )
    assert r.status_code == 422


def test_total_drift_is_409(client, payload):
    _, chunks, fp = payload
    _post_chunk(client, fp, chunks, 0)

    r = _post_chunk(client, fp, chunks, 1, total=4)

    assert r.status_code == 409
    assert r.json()["error"]["type"] == "SessionStateMismatch"
    assert r.json()["error"]["expected"] == 3


def test_reuse_after_merge_is_409(client, payload):
    _, chunks, fp = payload
    for i in range(3):
        _post_chunk(client, fp, chunks, i)

    r = _post_chunk(client, fp, chunks, 0)
    assert r.status_code == 409
    assert r.json()["error"]["type"] == "SessionAlreadyMerged"

    # laatste chunk nog eens melden: zelfde uitkomst
    assert _post_chunk(client, fp, chunks, 2).text == "-1"

    # maar niet onder een andere naam
    r = _post_chunk(client, fp, chunks, 2, name="other.bin")
    assert r.status_code == 409
    assert r.json()["error"]["final_name"] == "movie.bin"


def test_status_with_other_total_is_409(client, payload):
    _, chunks, fp = payload
    _post_chunk(client, fp, chunks, 0)
    r = client.get(STATUS_PATH, params={"md5": fp, "totalPieces": 7})
    assert r.status_code == 409
