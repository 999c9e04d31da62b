from locust import HttpUser, between, task
import os

CONSOLE_BASE = os.environ.get("STORAGE_CONSOLE_API_BASE", "http://localhost:8000")


class ConsoleUser(HttpUser):
    """Dashboard viewers polling the console while an operator uploads files."""

    host = CONSOLE_BASE
    wait_time = between(0.5, 2.0)

    @task(4)
    def lifecycle(self):
        self.client.get("/v1/console/lifecycle")

    @task(3)
    def collections(self):
        self.client.get("/v1/console/collections")

    @task(2)
    def distribution(self):
        self.client.get("/v1/console/distribution")

    @task(1)
    def activity(self):
        self.client.get("/v1/console/activity", params={"limit": 10})

    @task(1)
    def upload_small_file(self):
        resp = self.client.post(
            "/v1/console/files",
            files={"file": ("load-test.bin", os.urandom(4096), "application/octet-stream")},
        )
        if resp.status_code >= 400:
            return
        file_id = resp.json().get("fileId")
        if file_id:
            self.client.delete(f"/v1/console/files/{file_id}")
