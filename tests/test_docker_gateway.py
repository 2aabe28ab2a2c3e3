import unittest
from unittest import mock

import sys
from pathlib import Path

from docker.errors import DockerException, NotFound

sys.path.append(str(Path(__file__).resolve().parents[1]))
from dockup.errors import TopologyError  # noqa: E402
from dockup.services import docker as gateway_module  # noqa: E402
from dockup.services.docker import ContainerSnapshot, DockerGateway, LocalImage  # noqa: E402


def dummy_container(name, image, state="running", labels=None):
    container = mock.MagicMock()
    container.id = f"{name}-id"
    container.name = name
    container.status = state
    container.labels = labels or {}
    container.attrs = {
        "Image": f"sha256:{name}",
        "Config": {"Image": image, "Labels": labels or {}},
        "State": {"Status": state},
    }
    return container


COMPOSE_LABELS = {
    "com.docker.compose.project": "web",
    "com.docker.compose.service": "nginx",
    "com.docker.compose.project.working_dir": "/srv/web",
    "com.docker.compose.project.config_files": "compose.yaml,/etc/override.yaml",
}


class DockerGatewayTests(unittest.TestCase):
    def setUp(self):
        self.client = mock.MagicMock()
        patcher = mock.patch.object(gateway_module, "docker", autospec=True)
        self.addCleanup(patcher.stop)
        self.mock_docker = patcher.start()
        self.mock_docker.from_env.return_value = self.client
        self.gateway = DockerGateway()

    def test_uses_docker_from_env(self):
        self.mock_docker.from_env.assert_called_once_with()
        self.assertIs(self.gateway.docker_api, self.client.api)

    def test_engine_ping(self):
        self.assertTrue(self.gateway.is_engine_running())

        self.client.ping.side_effect = DockerException("connection refused")
        self.assertFalse(self.gateway.is_engine_running())

    def test_list_containers_reads_compose_labels(self):
        self.client.containers.list.return_value = [
            dummy_container("standalone", "syncthing/syncthing:1.27", state="exited"),
            dummy_container("web-nginx-1", "nginx:1.25", labels=COMPOSE_LABELS),
        ]

        containers = self.gateway.list_containers()

        self.client.containers.list.assert_called_once_with(all=True)
        self.assertEqual([c.name for c in containers], ["standalone", "web-nginx-1"])
        web = containers[1]
        self.assertEqual((web.project, web.service), ("web", "nginx"))
        self.assertTrue(web.compose_managed and web.running)
        self.assertEqual(web.config_paths, ("/srv/web/compose.yaml", "/etc/override.yaml"))
        self.assertEqual(web.image_id, "sha256:web-nginx-1")
        self.assertFalse(containers[0].compose_managed)
        self.assertEqual(self.gateway.project_snapshot("web"), [web])

    def test_engine_failure_is_a_topology_error(self):
        self.client.containers.list.side_effect = DockerException("connection refused")

        with self.assertRaises(TopologyError):
            self.gateway.list_containers()

    def test_missing_container(self):
        self.client.containers.get.side_effect = NotFound("No such container")

        self.assertIsNone(self.gateway.get_container("ghost"))

    def test_local_image(self):
        self.client.api.inspect_image.return_value = {
            "Id": "sha256:abc",
            "RepoDigests": ["nginx@sha256:111", "mirror.local/library/nginx@sha256:222"],
            "Config": {"Labels": {"org.opencontainers.image.version": "1.25.3"}},
        }

        image = self.gateway.local_image("nginx:1.25")

        self.assertEqual(image.id, "sha256:abc")
        self.assertEqual(image.digest_for("docker.io/library/nginx:1.25"), "sha256:111")
        self.assertEqual(image.digest_for("mirror.local/library/nginx:1.25"), "sha256:222")
        self.assertEqual(image.labels["org.opencontainers.image.version"], "1.25.3")

    def test_local_image_not_present(self):
        self.client.api.inspect_image.side_effect = NotFound("No such image")

        self.assertIsNone(self.gateway.local_image("nginx:9"))


class SnapshotTests(unittest.TestCase):
    def test_from_labels_without_compose(self):
        snapshot = ContainerSnapshot.from_labels("id", "solo", "redis:7", "sha256:x", "restarting", None)

        self.assertTrue(snapshot.running)
        self.assertFalse(snapshot.compose_managed)
        self.assertEqual(snapshot.config_paths, ())

    def test_digest_for_falls_back_to_first_entry(self):
        image = LocalImage("sha256:x", ("<none>", "other/repo@sha256:333"))

        self.assertEqual(image.digest_for("nginx:1"), "sha256:333")
        self.assertIsNone(LocalImage("sha256:y").digest_for("nginx:1"))


if __name__ == "__main__":
    unittest.main()
