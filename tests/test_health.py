"""Tests for health endpoints."""


class TestHealth:
    """Test health check endpoint."""

    def test_health_check(self, client):
        """Health check returns component status."""
        response = client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "ok"
        assert data["task_queue"] == "background_tasks"
        assert "version" in data
        assert data["uptime_seconds"] is not None

    def test_health_redis_unavailable_without_arq(self, client):
        """Redis is not checked when the ARQ worker is disabled."""
        response = client.get("/api/health")
        assert response.json()["redis"] == "unavailable"

    def test_health_counts_change_subscribers(self, client, broker):
        subscription = broker.subscribe("owner-1")
        try:
            response = client.get("/api/health")
            assert response.json()["change_subscribers"] == 1
        finally:
            subscription.close()

    def test_version(self, client, settings):
        response = client.get("/api/version")
        assert response.status_code == 200
        assert response.json() == {"name": settings.app_name, "version": settings.app_version}
