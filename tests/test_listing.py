import pytest

from qbo_actions.schemas.actions import Resource
from qbo_actions.services.listing import build_select_statement, flatten_record_lines, list_records
from qbo_actions.services.request_builder import QuickBooksValidationError


def _paged_responder(entity: str, total: int):
    """Serve ``total`` rows of ``entity`` honouring STARTPOSITION/MAXRESULTS."""

    def respond(method, path, query, body):
        statement = query["query"]
        tokens = statement.split()
        start = int(tokens[tokens.index("STARTPOSITION") + 1])
        maximum = int(tokens[tokens.index("MAXRESULTS") + 1])
        rows = [{"Id": str(n)} for n in range(start, min(start + maximum, total + 1))]
        return {"QueryResponse": {entity: rows, "startPosition": start, "maxResults": len(rows)}}

    return respond


def _statements(client):
    return [call.query["query"] for call in client.calls]


def test_build_select_statement_appends_filter_clause():
    assert build_select_statement(Resource.CUSTOMER) == "SELECT * FROM Customer"
    assert (
        build_select_statement(Resource.INVOICE, {"query": " WHERE Balance > '0' "})
        == "SELECT * FROM Invoice WHERE Balance > '0'"
    )


@pytest.mark.asyncio
async def test_return_all_pages_until_short_page(fake_client_factory):
    client = fake_client_factory(_paged_responder("Customer", 2500))

    records = await list_records(client, Resource.CUSTOMER, return_all=True, page_size=1000)

    assert len(records) == 2500
    assert records[0] == {"Id": "1"}
    assert records[-1] == {"Id": "2500"}
    assert _statements(client) == [
        "SELECT * FROM Customer STARTPOSITION 1 MAXRESULTS 1000",
        "SELECT * FROM Customer STARTPOSITION 1001 MAXRESULTS 1000",
        "SELECT * FROM Customer STARTPOSITION 2001 MAXRESULTS 1000",
    ]
    assert {call.path for call in client.calls} == {"/v3/company/123/query"}
    assert {call.method for call in client.calls} == {"GET"}


@pytest.mark.asyncio
async def test_return_all_with_exact_page_multiple_asks_once_more(fake_client_factory):
    client = fake_client_factory(_paged_responder("Vendor", 4))

    records = await list_records(client, Resource.VENDOR, return_all=True, page_size=2)

    assert [record["Id"] for record in records] == ["1", "2", "3", "4"]
    assert len(client.calls) == 3


@pytest.mark.asyncio
async def test_limit_caps_single_page(fake_client_factory):
    client = fake_client_factory(_paged_responder("Item", 500))

    records = await list_records(client, Resource.ITEM, limit=50)

    assert len(records) == 50
    assert _statements(client) == ["SELECT * FROM Item STARTPOSITION 1 MAXRESULTS 50"]


@pytest.mark.asyncio
async def test_limit_spanning_pages_shrinks_last_request(fake_client_factory):
    client = fake_client_factory(_paged_responder("Bill", 500))

    records = await list_records(client, Resource.BILL, limit=25, page_size=10)

    assert len(records) == 25
    assert _statements(client) == [
        "SELECT * FROM Bill STARTPOSITION 1 MAXRESULTS 10",
        "SELECT * FROM Bill STARTPOSITION 11 MAXRESULTS 10",
        "SELECT * FROM Bill STARTPOSITION 21 MAXRESULTS 5",
    ]


@pytest.mark.asyncio
async def test_limit_larger_than_available(fake_client_factory):
    client = fake_client_factory(_paged_responder("Estimate", 3))

    records = await list_records(client, Resource.ESTIMATE, limit=50)

    assert len(records) == 3
    assert len(client.calls) == 1


@pytest.mark.asyncio
async def test_empty_result(fake_client_factory):
    client = fake_client_factory(lambda method, path, query, body: {"QueryResponse": {}})

    assert await list_records(client, Resource.PAYMENT, return_all=True) == []
    assert len(client.calls) == 1


@pytest.mark.asyncio
async def test_filters_are_carried_into_every_page(fake_client_factory):
    client = fake_client_factory(_paged_responder("Invoice", 3))

    await list_records(
        client,
        Resource.INVOICE,
        filters={"query": "WHERE TxnDate > '2024-01-01'"},
        return_all=True,
        page_size=2,
    )

    assert _statements(client) == [
        "SELECT * FROM Invoice WHERE TxnDate > '2024-01-01' STARTPOSITION 1 MAXRESULTS 2",
        "SELECT * FROM Invoice WHERE TxnDate > '2024-01-01' STARTPOSITION 3 MAXRESULTS 2",
    ]


@pytest.mark.asyncio
async def test_listing_restarts_from_first_page(fake_client_factory):
    client = fake_client_factory(_paged_responder("Customer", 3))

    first = await list_records(client, Resource.CUSTOMER, limit=2)
    second = await list_records(client, Resource.CUSTOMER, limit=2)

    assert first == second
    assert _statements(client)[0] == _statements(client)[1]


@pytest.mark.asyncio
async def test_flatten_lines_tags_each_line(fake_client_factory):
    invoices = [
        {"Id": "10", "DocNumber": "1001", "Line": [{"Amount": 5}, {"Amount": 7}]},
        {"Id": "11", "Line": [{"Amount": 1}]},
    ]
    client = fake_client_factory(
        lambda method, path, query, body: {"QueryResponse": {"Invoice": invoices}}
    )

    lines = await list_records(client, Resource.INVOICE, limit=5, flatten_lines=True)

    assert lines == [
        {"Amount": 5, "TxnId": "10", "TxnType": "Invoice", "DocNumber": "1001"},
        {"Amount": 7, "TxnId": "10", "TxnType": "Invoice", "DocNumber": "1001"},
        {"Amount": 1, "TxnId": "11", "TxnType": "Invoice"},
    ]


def test_flatten_record_without_lines():
    assert flatten_record_lines(Resource.BILL, {"Id": "3"}) == []


@pytest.mark.asyncio
async def test_flatten_lines_rejected_for_resources_without_lines(fake_client_factory):
    client = fake_client_factory()

    with pytest.raises(QuickBooksValidationError):
        await list_records(client, Resource.CUSTOMER, limit=5, flatten_lines=True)
    assert client.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize("page_size", [0, 1001])
async def test_page_size_bounds(fake_client_factory, page_size):
    client = fake_client_factory()

    with pytest.raises(QuickBooksValidationError):
        await list_records(client, Resource.ITEM, return_all=True, page_size=page_size)
    assert client.calls == []


@pytest.mark.asyncio
async def test_limit_required_unless_return_all(fake_client_factory):
    client = fake_client_factory()

    with pytest.raises(QuickBooksValidationError):
        await list_records(client, Resource.ITEM, limit=0)
