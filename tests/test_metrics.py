"""Tests for Prometheus metrics endpoint and middleware."""

import pytest

from dbhub.middleware.metrics import normalize_path


class TestMetricsEndpoint:
    """Tests for /metrics endpoint."""

    def test_metrics_endpoint_returns_prometheus_format(self, client):
        """Test that /metrics returns valid Prometheus text format."""
        client.get("/health")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        content = response.text
        assert "dbhub_api_requests_total" in content
        assert "dbhub_api_request_duration_seconds" in content

    def test_metrics_includes_service_info(self, client):
        """Test that metrics include service info."""
        content = client.get("/metrics").text

        assert "dbhub_api_service_info" in content
        assert "sqlite_version" in content

    def test_metrics_includes_storage_gauges(self, client, register_user, upload, sales_db):
        """Test that storage gauges reflect stored data."""
        alice = register_user("alice")
        upload(alice, sales_db, name="sales.db")

        content = client.get("/metrics").text

        assert "dbhub_users_total 1.0" in content
        assert "dbhub_databases_total 1.0" in content
        assert "dbhub_database_versions_total 1.0" in content
        assert 'dbhub_storage_size_bytes{type="objects"}' in content

    def test_cache_metrics_after_reads(self, client, register_user, upload, sales_db):
        """Test that repeated reads record cache hits."""
        alice = register_user("alice")
        upload(alice, sales_db, name="sales.db")

        client.get("/x/table/alice/sales.db")
        client.get("/x/table/alice/sales.db")

        content = client.get("/metrics").text
        assert 'dbhub_cache_hits_total{namespace="tbl"}' in content

    def test_metrics_endpoint_not_instrumented(self, client):
        """Test that /metrics endpoint itself is not instrumented to avoid recursion."""
        for _ in range(3):
            client.get("/metrics")

        assert 'endpoint="/metrics"' not in client.get("/metrics").text


class TestMetricsNormalization:
    """Tests for path normalization in metrics."""

    @pytest.mark.parametrize(
        "path, expected",
        [
            ("/x/table/alice/sales.db", "/x/table/{owner}/{database}"),
            ("/x/downloadcsv/alice/sales.db", "/x/downloadcsv/{owner}/{database}"),
            ("/x/star/alice/sales.db", "/x/star/{owner}/{database}"),
            ("/stars/alice/sales.db", "/stars/{owner}/{database}"),
            ("/users/alice", "/users/{username}"),
            ("/users", "/users"),
            ("/x/pref", "/x/pref"),
            ("/x/uploaddata", "/x/uploaddata"),
            ("/health", "/health"),
            ("/", "/"),
        ],
    )
    def test_normalize_path(self, path, expected):
        assert normalize_path(path) == expected

    def test_database_names_not_in_labels(self, client, register_user, upload, sales_db):
        """Test that owner and database names do not become label values."""
        alice = register_user("alice")
        upload(alice, sales_db, name="very_unique_name.db")
        client.get("/x/table/alice/very_unique_name.db")

        content = client.get("/metrics").text

        assert "very_unique_name" not in content
