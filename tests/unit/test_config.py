"""Unit tests for settings parsing."""

from comborank.config import Settings


def test_list_settings_accept_comma_separated_and_json_values() -> None:
    comma = Settings(supported_markets="us, gb ,jp")
    as_json = Settings(supported_markets='["us", "de"]')
    single = Settings(supported_platforms="ios")

    assert comma.supported_markets == ["us", "gb", "jp"]
    assert as_json.supported_markets == ["us", "de"]
    assert single.supported_platforms == ["ios"]


def test_database_url_is_normalized_to_asyncpg() -> None:
    assert (
        Settings(database_url="postgres://u:p@db:5432/comborank").database_url
        == "postgresql+asyncpg://u:p@db:5432/comborank"
    )
    assert (
        Settings(database_url="postgresql://u:p@db/comborank").database_url
        == "postgresql+asyncpg://u:p@db/comborank"
    )
    assert Settings(database_url="sqlite+aiosqlite:///x.db").database_url == "sqlite+aiosqlite:///x.db"


def test_metadata_field_limits_follow_settings() -> None:
    config = Settings(metadata_max_keywords_chars=150)

    assert config.metadata_field_limits == {"title": 100, "subtitle": 100, "keywords": 150}
