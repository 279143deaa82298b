import boto3
import pytest
from botocore.exceptions import ClientError
from botocore.stub import Stubber

from bigfile.services.errors import BucketNotEmpty, ComposeError, ObjectNotFound, StorageUnavailable
from bigfile.services.storage import S3Storage


@pytest.fixture
def s3():
    client = boto3.client(
        "s3",
        region_name="us-east-1",
        aws_access_key_id="test",
        aws_secret_access_key="test",
    )
    with Stubber(client) as stubber:
        yield S3Storage(client), stubber
        stubber.assert_no_pending_responses()


# -------------------------
# compose
# -------------------------
def test_compose_many_sources_uses_multipart_copy(s3):
    store, stub = s3
    stub.add_response(
        "create_multipart_upload",
        {"Bucket": "dest", "Key": "final.bin", "UploadId": "u-1"},
        {"Bucket": "dest", "Key": "final.bin"},
    )
    for n in (1, 2, 3):
        stub.add_response("upload_part_copy", {"CopyPartResult": {"ETag": f'"e{n}"'}})
    stub.add_response(
        "complete_multipart_upload",
        {"Bucket": "dest", "Key": "final.bin", "ETag": '"x-3"'},
        {
            "Bucket": "dest",
            "Key": "final.bin",
            "UploadId": "u-1",
            "MultipartUpload": {
                "Parts": [
                    {"ETag": '"e1"', "PartNumber": 1},
                    {"ETag": '"e2"', "PartNumber": 2},
                    {"ETag": '"e3"', "PartNumber": 3},
                ]
            },
        },
    )

    store.compose("dest", "final.bin", "temp", ["fp/0", "fp/1", "fp/2"])


def test_compose_single_source_is_a_copy(s3):
    store, stub = s3
    stub.add_response("copy_object", {"CopyObjectResult": {"ETag": '"x"'}})
    store.compose("dest", "final.bin", "temp", ["fp/0"])


def test_compose_failure_aborts_multipart_upload(s3):
    store, stub = s3
    stub.add_response("create_multipart_upload", {"UploadId": "u-9"})
    stub.add_response("upload_part_copy", {"CopyPartResult": {"ETag": '"e1"'}})
    stub.add_client_error("upload_part_copy", service_error_code="EntityTooSmall", http_status_code=400)
    stub.add_response(
        "abort_multipart_upload",
        {},
        {"Bucket": "dest", "Key": "final.bin", "UploadId": "u-9"},
    )

    with pytest.raises(ComposeError):
        store.compose("dest", "final.bin", "temp", ["fp/0", "fp/1"])


def test_compose_rejects_too_many_parts(s3):
    store, _ = s3
    with pytest.raises(ComposeError):
        store.compose("dest", "final.bin", "temp", [f"fp/{i}" for i in range(10_001)])


# -------------------------
# objecten
# -------------------------
def test_put_if_absent(s3):
    store, stub = s3
    stub.add_response("put_object", {}, {"Bucket": "temp", "Key": "fp/.merging", "Body": b"{}", "IfNoneMatch": "*"})
    stub.add_client_error("put_object", service_error_code="PreconditionFailed", http_status_code=412)

    assert store.put_if_absent("temp", "fp/.merging", b"{}")
    assert not store.put_if_absent("temp", "fp/.merging", b"{}")


def test_not_found_is_mapped(s3):
    store, stub = s3
    stub.add_client_error("get_object", service_error_code="NoSuchKey", http_status_code=404)
    stub.add_client_error("head_object", service_error_code="404", http_status_code=404)

    with pytest.raises(ObjectNotFound):
        store.get("b", "k")
    assert not store.exists("b", "k")


def test_transient_errors_become_storage_unavailable(s3):
    store, stub = s3
    stub.add_client_error("put_object", service_error_code="SlowDown", http_status_code=503)

    with pytest.raises(StorageUnavailable) as exc_info:
        store.put("b", "k", b"x")
    assert exc_info.value.retryable
    assert isinstance(exc_info.value.cause, ClientError)


def test_other_client_errors_pass_through(s3):
    store, stub = s3
    stub.add_client_error("put_object", service_error_code="AccessDenied", http_status_code=403)

    with pytest.raises(ClientError):
        store.put("b", "k", b"x")


def test_list_follows_pagination(s3):
    store, stub = s3
    stub.add_response(
        "list_objects_v2",
        {"Contents": [{"Key": "fp/0"}, {"Key": "fp/1"}], "IsTruncated": True, "NextContinuationToken": "t1"},
    )
    stub.add_response("list_objects_v2", {"Contents": [{"Key": "fp/2"}], "IsTruncated": False})

    assert store.list("temp", "fp/") == ["fp/0", "fp/1", "fp/2"]


def test_stat_strips_etag_quotes(s3):
    store, stub = s3
    stub.add_response("head_object", {"ContentLength": 5, "ETag": '"abc"', "ContentType": "text/plain"})

    st = store.stat("b", "k")
    assert (st.size, st.etag, st.content_type) == (5, "abc", "text/plain")


def test_delete_many_reports_failed_keys(s3):
    store, stub = s3
    stub.add_response(
        "delete_objects",
        {"Errors": [{"Key": "fp/1", "Code": "AccessDenied", "Message": "denied"}]},
    )
    assert store.delete_many("temp", ["fp/0", "fp/1"]) == ["fp/1"]


# -------------------------
# buckets
# -------------------------
def test_bucket_exists(s3):
    store, stub = s3
    stub.add_response("head_bucket", {})
    stub.add_client_error("head_bucket", service_error_code="404", http_status_code=404)

    assert store.bucket_exists("yes")
    assert not store.bucket_exists("no")


def test_make_bucket_tolerates_race(s3):
    store, stub = s3
    stub.add_client_error("create_bucket", service_error_code="BucketAlreadyOwnedByYou", http_status_code=409)
    store.make_bucket("bigfile")


def test_make_bucket_in_us_east_1_has_no_location(s3):
    store, stub = s3
    stub.add_response("create_bucket", {}, {"Bucket": "temp"})
    store.make_bucket("temp")


def test_make_bucket_outside_us_east_1_sends_location_constraint():
    client = boto3.client(
        "s3",
        region_name="eu-west-1",
        aws_access_key_id="test",
        aws_secret_access_key="test",
    )
    with Stubber(client) as stub:
        stub.add_response(
            "create_bucket",
            {},
            {"Bucket": "temp", "CreateBucketConfiguration": {"LocationConstraint": "eu-west-1"}},
        )
        S3Storage(client).make_bucket("temp")
        stub.assert_no_pending_responses()


def test_explicit_region_wins_over_client_region(s3):
    _, stub = s3
    store = S3Storage(stub.client, region="eu-central-1")
    stub.add_response(
        "create_bucket",
        {},
        {"Bucket": "temp", "CreateBucketConfiguration": {"LocationConstraint": "eu-central-1"}},
    )
    store.make_bucket("temp")


def test_delete_bucket_not_empty(s3):
    store, stub = s3
    stub.add_client_error("delete_bucket", service_error_code="BucketNotEmpty", http_status_code=409)
    with pytest.raises(BucketNotEmpty):
        store.delete_bucket("bigfile")


def test_list_buckets(s3):
    store, stub = s3
    stub.add_response("list_buckets", {"Buckets": [{"Name": "bigfile"}, {"Name": "temp"}]})
    assert store.list_buckets() == ["bigfile", "temp"]


def test_presigned_url(s3):
    store, _ = s3
    url = store.presigned_get_url("bigfile", "2024-01-01/a.bin", 60)
    assert "a.bin" in url
    assert "Expires" in url
