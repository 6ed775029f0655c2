import pytest
from sqlalchemy import select

from chatrelay.core.config import ProviderModel
from chatrelay.storage import catalog
from chatrelay.storage.database import session_scope
from chatrelay.storage.models import Provider


def _provider(code: str = "openai", **overrides) -> ProviderModel:
    data = {
        "code": code,
        "display_name": code.title(),
        "adapter": "openai",
        "endpoint": f"https://{code}.example/v1/chat/completions",
        "default_model": "model-a",
    }
    data.update(overrides)
    return ProviderModel(**data)


def test_sync_providers_inserts_then_updates(db):
    assert catalog.sync_providers([_provider(), _provider("deepseek")]) == 2
    catalog.sync_providers([_provider(default_model="model-b", options={"temperature": 0.3})])

    with session_scope() as session:
        rows = session.scalars(select(Provider).order_by(Provider.code)).all()
        assert [row.code for row in rows] == ["deepseek", "openai"]

    provider = catalog.get_provider("openai")
    assert provider.default_model == "model-b"
    assert provider.options == {"temperature": 0.3}
    assert catalog.get_provider("missing") is None
    assert [item.code for item in catalog.list_providers()] == ["deepseek", "openai"]


def test_add_key_requires_known_provider(db):
    with pytest.raises(catalog.UnknownProviderError):
        catalog.add_key("openai", "sk")


def test_list_keys_filters_by_provider(db):
    catalog.sync_providers([_provider(), _provider("deepseek")])
    catalog.add_key("openai", "sk-1", model="gpt-mini", label="mini")
    deepseek_key = catalog.add_key("deepseek", "sk-2")

    keys = catalog.list_keys("deepseek")

    assert [key["id"] for key in keys] == [deepseek_key]
    assert keys[0]["pending_sessions"] == 0
    assert keys[0]["usage_count"] == 0
    assert keys[0]["last_used_at"] is None
    assert len(catalog.list_keys()) == 2


def test_disable_key_clears_rate_limit(db):
    catalog.sync_providers([_provider()])
    key_id = catalog.add_key("openai", "sk")

    assert catalog.disable_key(key_id) is True
    assert catalog.disable_key(key_id) is False
    assert catalog.disable_key(9999) is False
    key = catalog.list_keys()[0]
    assert key["status"] == "disabled"
    assert key["rate_limit_reset_at"] is None
