import pytest
import requests

from attestation_harvester.core.errors import FetchError
from attestation_harvester.core.index import AttestationFetcher
from attestation_harvester.core.models import OracleIdentity

from conftest import FakeResponse, FakeSession, arweave_index, tag_values

BUCKET = 1701950430
NODE_1, NODE_2, NODE_3 = OracleIdentity


def make_fetcher(session: FakeSession, **kwargs) -> AttestationFetcher:
    return AttestationFetcher("https://arweave.net/graphql", "redstone-avalanche-prod", session=session, **kwargs)


def edges(*nodes):
    return FakeResponse({"data": {"transactions": {"edges": [{"node": n} for n in nodes]}}})


def test_window_lists_exact_grid_point_first() -> None:
    fetcher = make_fetcher(FakeSession(), window_buckets=1)
    assert fetcher.window_ms(BUCKET) == [1701950430000, 1701950420000, 1701950440000]


def test_window_of_zero_buckets_is_exact_match_only() -> None:
    fetcher = make_fetcher(FakeSession(), window_buckets=0)
    assert fetcher.window_ms(BUCKET) == [1701950430000]


def test_query_filters_by_signer_service_and_window() -> None:
    session = FakeSession(post_handler=arweave_index())
    make_fetcher(session, timeout=12.5).fetch(BUCKET, NODE_2)

    variables = session.posts[0]["variables"]
    assert tag_values(variables, "signerAddress") == [NODE_2.address]
    assert tag_values(variables, "dataServiceId") == ["redstone-avalanche-prod"]
    assert tag_values(variables, "timestamp")[0] == "1701950430000"
    assert session.timeouts == [12.5]


def test_fetch_returns_closest_record() -> None:
    session = FakeSession(post_handler=lambda url, body: edges(
        {"id": "far", "tags": [{"name": "timestamp", "value": "1701950420000"}]},
        {"id": "exact", "tags": [{"name": "timestamp", "value": "1701950430000"}]},
    ))
    record = make_fetcher(session).fetch(BUCKET, NODE_1)

    assert record.payload_locator == "exact"
    assert record.oracle is NODE_1
    assert record.timestamp_ms == 1701950430000


def test_fetch_accepts_record_without_timestamp_tag() -> None:
    session = FakeSession(post_handler=lambda url, body: edges({"id": "tx1", "tags": []}))
    record = make_fetcher(session).fetch(BUCKET, NODE_1)
    assert record.payload_locator == "tx1"
    assert record.timestamp_ms is None


def test_fetch_empty_index_returns_none() -> None:
    session = FakeSession(post_handler=lambda url, body: edges())
    assert make_fetcher(session).fetch(BUCKET, NODE_1) is None


def test_graphql_errors_raise_fetch_error() -> None:
    session = FakeSession(post_handler=lambda url, body: FakeResponse({"errors": [{"message": "boom"}]}))
    with pytest.raises(FetchError, match="boom"):
        make_fetcher(session).fetch(BUCKET, NODE_1)


def test_http_failure_raises_fetch_error() -> None:
    session = FakeSession(post_handler=lambda url, body: FakeResponse(status=503))
    with pytest.raises(FetchError):
        make_fetcher(session).fetch(BUCKET, NODE_1)


def test_timeout_raises_fetch_error() -> None:
    def handler(url, body):
        raise requests.Timeout("read timed out")

    with pytest.raises(FetchError, match="timed out"):
        make_fetcher(FakeSession(post_handler=handler)).fetch(BUCKET, NODE_1)


def test_fetch_all_keeps_identity_order_and_isolates_failures() -> None:
    def handler(url, body):
        signer = tag_values(body["variables"], "signerAddress")[0]
        if signer == NODE_2.address:
            raise requests.ConnectionError("reset by peer")
        return arweave_index()(url, body)

    records = make_fetcher(FakeSession(post_handler=handler)).fetch_all(BUCKET, [NODE_1, NODE_2, NODE_3])

    assert [r.oracle if r else None for r in records] == [NODE_1, None, NODE_3]


def test_fetch_all_empty_result_leaves_slot_empty() -> None:
    session = FakeSession(post_handler=arweave_index(missing=[NODE_3.address]))
    records = make_fetcher(session).fetch_all(BUCKET, [NODE_1, NODE_2, NODE_3])
    assert records[2] is None
    assert records[0] is not None and records[1] is not None


def test_fetch_retries_when_configured() -> None:
    responses = [FakeResponse(status=502), edges({"id": "tx1", "tags": []})]
    session = FakeSession(post_handler=lambda url, body: responses.pop(0))

    record = make_fetcher(session, retries=1, backoff=0).fetch(BUCKET, NODE_1)

    assert record.payload_locator == "tx1"
    assert len(session.posts) == 2


@pytest.mark.parametrize("body", [["unexpected"], "text", {"data": ["unexpected"]}])
def test_non_object_response_raises_fetch_error(body) -> None:
    session = FakeSession(post_handler=lambda url, b: FakeResponse(body))
    with pytest.raises(FetchError, match="unexpected index"):
        make_fetcher(session).fetch(BUCKET, NODE_1)


def test_malformed_edges_and_tags_are_skipped() -> None:
    body = {
        "data": {
            "transactions": {
                "edges": [
                    "garbage",
                    {"node": None},
                    {"node": {"id": "tx-bad-tags", "tags": ["timestamp", 5]}},
                    {"node": {"id": "tx-good", "tags": [None, {"name": "timestamp", "value": "1701950430000"}]}},
                ]
            }
        }
    }
    session = FakeSession(post_handler=lambda url, b: FakeResponse(body))

    record = make_fetcher(session).fetch(BUCKET, NODE_1)

    assert record.payload_locator == "tx-good"
    assert record.timestamp_ms == 1701950430000


def test_unexpected_transactions_shape_means_no_record() -> None:
    session = FakeSession(post_handler=lambda url, b: FakeResponse({"data": {"transactions": ["x"]}}))
    assert make_fetcher(session).fetch(BUCKET, NODE_1) is None
