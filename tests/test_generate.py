import orjson
import pytest

from app.core.exceptions import GenerationError, GenerationTimeoutError

pytestmark = pytest.mark.asyncio

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


async def test_generate_consumes_one_credit(client, make_account, login, fake_generator):
    account = await make_account()
    login(account.id)

    r = await client.post(
        "/v1/generate",
        data={"section_type": "banner", "requirements": "Full width hero"},
    )
    assert r.status_code == 200
    body = r.json()
    assert body == {"code": "<html></html>", "credits_remaining": 2, "max_credits": 3}
    assert fake_generator.calls[0]["section_type"] == "banner"
    assert fake_generator.calls[0]["requirements"] == "Full width hero"


async def test_generate_passes_reference_image(client, make_account, login, fake_generator):
    account = await make_account()
    login(account.id)

    r = await client.post(
        "/v1/generate",
        data={"section_type": "slider"},
        files={"reference_image": ("ref.png", PNG_BYTES, "image/png")},
    )
    assert r.status_code == 200
    image = fake_generator.calls[0]["image"]
    assert image.media_type == "image/png"
    assert image.data == PNG_BYTES


async def test_generate_rejects_non_image_upload(client, make_account, login, ledger, fake_generator):
    account = await make_account()
    login(account.id)

    r = await client.post(
        "/v1/generate",
        data={"section_type": "slider"},
        files={"reference_image": ("notes.txt", b"hello", "text/plain")},
    )
    assert r.status_code == 400
    assert fake_generator.calls == []
    assert (await ledger.get_balance(account.id)).current == 3


async def test_generate_requires_section_type(client, make_account, login):
    account = await make_account()
    login(account.id)
    r = await client.post("/v1/generate", data={"section_type": "   "})
    assert r.status_code == 400


async def test_generate_without_credit_is_402_and_skips_model(client, make_account, login, ledger, fake_generator):
    account = await make_account()
    await ledger.consume(account.id, 3)
    login(account.id)

    r = await client.post("/v1/generate", data={"section_type": "footer"})
    assert r.status_code == 402
    assert fake_generator.calls == []


@pytest.mark.parametrize(
    "error,status_code",
    [(GenerationError(), 502), (GenerationTimeoutError(), 504)],
)
async def test_generation_failure_refunds_credit(
    client, make_account, login, ledger, fake_generator, error, status_code
):
    account = await make_account()
    login(account.id)
    fake_generator.error = error

    r = await client.post("/v1/generate", data={"section_type": "header"})
    assert r.status_code == status_code
    assert (await ledger.get_balance(account.id)).current == 3


async def test_stream_emits_progress_then_code(client, make_account, login, fake_generator):
    account = await make_account()
    login(account.id)

    r = await client.post("/v1/generate/stream", data={"section_type": "collection"})
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("application/x-ndjson")
    lines = [orjson.loads(line) for line in r.content.splitlines() if line.strip()]
    assert [line["status"] for line in lines] == ["generating", "complete"]
    assert lines[-1]["code"] == "<html></html>"
    assert lines[-1]["credits_remaining"] == 2


async def test_stream_error_line_and_refund(client, make_account, login, ledger, fake_generator):
    account = await make_account()
    login(account.id)
    fake_generator.error = GenerationTimeoutError()

    r = await client.post("/v1/generate/stream", data={"section_type": "collection"})
    lines = [orjson.loads(line) for line in r.content.splitlines() if line.strip()]
    assert lines[-1]["status"] == "error"
    assert lines[-1]["code"] == "GENERATION_TIMEOUT"
    assert lines[-1]["credits_remaining"] == 3
    assert (await ledger.get_balance(account.id)).current == 3


async def test_stream_without_credit_is_402(client, make_account, login, ledger):
    account = await make_account()
    await ledger.consume(account.id, 3)
    login(account.id)

    r = await client.post("/v1/generate/stream", data={"section_type": "collection"})
    assert r.status_code == 402


async def test_section_types_listed(client):
    r = await client.get("/v1/generate/section-types")
    assert r.status_code == 200
    assert "image-with-text" in r.json()["section_types"]
