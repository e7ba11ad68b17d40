"""Shared Elasticsearch client lifecycle."""

import pytest

from marketsearch import es_client


class RecordingElasticsearch:
    def __init__(self, host, **options):
        self.host = host
        self.options = options
        self.closed = False

    def close(self):
        self.closed = True


@pytest.fixture
def recording_client(monkeypatch):
    monkeypatch.setattr(es_client, "Elasticsearch", RecordingElasticsearch)
    es_client.get_client.cache_clear()
    yield
    es_client.get_client.cache_clear()


def test_client_is_built_once_from_settings(recording_client):
    client = es_client.get_client()

    assert es_client.get_client() is client
    assert client.host == es_client.settings.es_host
    assert client.options["request_timeout"] == es_client.settings.es_request_timeout
    assert client.options["max_retries"] == es_client.settings.es_max_retries
    assert client.options["retry_on_timeout"] is False


def test_close_client_releases_the_shared_instance(recording_client):
    es_client.close_client()

    client = es_client.get_client()
    es_client.close_client()

    assert client.closed is True
    assert es_client.get_client() is not client
