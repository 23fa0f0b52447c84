"""HttpEmailSender against a mocked provider."""

import json

import httpx
import pytest

from dripline.collaborators.http import HttpEmailSender
from dripline.exceptions import CollaboratorError, TransientCollaboratorError


def _sender(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpEmailSender(
        "https://mail.example.com/send", sender="news@example.com", client=client
    )


@pytest.mark.asyncio
async def test_accepted_message_posts_json():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(202, json={"id": "msg-1"})

    sender = _sender(handler)
    await sender.send_email("s@x.com", "Welcome", "Glad you joined!")
    await sender.close()

    [request] = requests
    assert request.method == "POST"
    assert json.loads(request.content) == {
        "from": "news@example.com",
        "to": "s@x.com",
        "subject": "Welcome",
        "body": "Glad you joined!",
    }


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [429, 500, 503])
async def test_unavailable_provider_is_transient(status):
    sender = _sender(lambda request: httpx.Response(status))
    with pytest.raises(TransientCollaboratorError):
        await sender.send_email("s@x.com", "Hi", "Body")


@pytest.mark.asyncio
async def test_rejected_message_is_permanent():
    sender = _sender(lambda request: httpx.Response(400))
    with pytest.raises(CollaboratorError) as excinfo:
        await sender.send_email("s@x.com", "Hi", "Body")
    assert not isinstance(excinfo.value, TransientCollaboratorError)


@pytest.mark.asyncio
async def test_transport_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    sender = _sender(handler)
    with pytest.raises(TransientCollaboratorError, match="unreachable"):
        await sender.send_email("s@x.com", "Hi", "Body")
