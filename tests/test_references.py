import sys
import unittest
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))
from dockup.services.references import (  # noqa: E402
    ImageReference,
    format_image_ref,
    normalize_image_name,
    parse_image_ref,
    registry_family,
)

DIGEST = "sha256:" + "ab" * 32


class ParseImageRefTests(unittest.TestCase):
    def test_bare_name_is_docker_hub_library_latest(self):
        ref = parse_image_ref("nginx")
        self.assertEqual(ref, ImageReference("docker.io", "library/nginx", "latest", None))

    def test_user_repository_with_tag(self):
        ref = parse_image_ref("linuxserver/sonarr:4.0.0")
        self.assertEqual(ref.registry, "docker.io")
        self.assertEqual(ref.repository, "linuxserver/sonarr")
        self.assertEqual(ref.tag, "4.0.0")
        self.assertEqual(ref.namespace, "linuxserver")
        self.assertEqual(ref.name, "sonarr")

    def test_registry_with_port_is_not_a_tag(self):
        ref = parse_image_ref("registry.example.com:5000/team/app")
        self.assertEqual(ref.registry, "registry.example.com:5000")
        self.assertEqual(ref.repository, "team/app")
        self.assertEqual(ref.tag, "latest")

    def test_localhost_is_a_registry(self):
        ref = parse_image_ref("localhost/app:dev")
        self.assertEqual(ref.registry, "localhost")
        self.assertEqual(ref.repository, "app")
        self.assertEqual(ref.tag, "dev")

    def test_docker_hub_aliases_normalise(self):
        for raw in ("index.docker.io/library/redis:7", "registry-1.docker.io/library/redis:7", "docker.io/redis:7"):
            with self.subTest(raw=raw):
                ref = parse_image_ref(raw)
                self.assertEqual(ref.registry, "docker.io")
                self.assertEqual(ref.repository, "library/redis")

    def test_digest_is_split_first(self):
        ref = parse_image_ref(f"ghcr.io/owner/app:1.2@{DIGEST}")
        self.assertEqual(ref.registry, "ghcr.io")
        self.assertEqual(ref.repository, "owner/app")
        self.assertEqual(ref.tag, "1.2")
        self.assertEqual(ref.digest, DIGEST)
        self.assertEqual(ref.reference, DIGEST)

    def test_digest_only_reference_has_no_default_tag(self):
        ref = parse_image_ref(f"alpine@{DIGEST}")
        self.assertIsNone(ref.tag)
        self.assertEqual(ref.digest, DIGEST)

    def test_nested_repository_path(self):
        ref = parse_image_ref("gitlab.example.com/org/team/app:v3")
        self.assertEqual(ref.repository, "org/team/app")
        self.assertEqual(ref.namespace, "org/team")

    def test_whitespace_and_garbage_do_not_raise(self):
        self.assertEqual(parse_image_ref("  nginx:1.25  ").tag, "1.25")
        for raw in ("", "   ", ":", "/", "@@@", "a:b:c"):
            with self.subTest(raw=raw):
                ref = parse_image_ref(raw)
                self.assertEqual(ref.registry, "docker.io")
                self.assertTrue(ref.tag or ref.digest)

    def test_registry_host_is_lower_cased(self):
        ref = parse_image_ref("GHCR.IO/Owner/App:1")
        self.assertEqual(ref.registry, "ghcr.io")
        self.assertEqual(ref.repository, "Owner/App")


class FormatImageRefTests(unittest.TestCase):
    def test_shortest_form(self):
        self.assertEqual(format_image_ref(parse_image_ref("docker.io/library/nginx:1.25")), "nginx:1.25")
        self.assertEqual(format_image_ref(parse_image_ref("docker.io/user/app")), "user/app:latest")
        self.assertEqual(format_image_ref(parse_image_ref("ghcr.io/o/a:1")), "ghcr.io/o/a:1")

    def test_round_trip_is_stable(self):
        samples = [
            "nginx",
            "nginx:1.25-alpine",
            "library/nginx",
            "user/app:tag",
            "ghcr.io/owner/repo:v1.2.3",
            "lscr.io/linuxserver/sonarr",
            "registry.example.com:5000/repo:tag",
            "localhost:5000/app",
            f"repo:tag@{DIGEST}",
            f"quay.io/org/app@{DIGEST}",
            "  index.docker.io/library/redis  ",
            "",
            "::",
            "docker.io/localhost/app:1",
            "docker.io/foo.bar/app",
            "docker.io/library/foo.bar/app",
        ]
        for raw in samples:
            with self.subTest(raw=raw):
                parsed = parse_image_ref(raw)
                self.assertEqual(parse_image_ref(format_image_ref(parsed)), parsed)


def test_normalize_image_name_strips_hub_prefixes():
    assert normalize_image_name("docker.io/library/nginx:1.25") == "nginx:1.25"
    assert normalize_image_name("docker.io/grafana/grafana") == "grafana/grafana"
    assert normalize_image_name("ghcr.io/o/a:1") == "ghcr.io/o/a:1"


def test_registry_family():
    assert registry_family("docker.io") == "dockerhub"
    assert registry_family("registry-1.docker.io") == "dockerhub"
    assert registry_family("ghcr.io") == "ghcr"
    assert registry_family("lscr.io") == "lscr"
    assert registry_family("quay.io") == "generic"


def test_api_host_for_docker_hub():
    assert parse_image_ref("nginx").api_host == "registry-1.docker.io"
    assert parse_image_ref("quay.io/org/app").api_host == "quay.io"


def test_hub_namespace_that_looks_like_a_host_keeps_the_prefix():
    ref = parse_image_ref("docker.io/localhost/app:1")

    assert (ref.registry, ref.repository) == ("docker.io", "localhost/app")
    assert format_image_ref(ref) == "docker.io/localhost/app:1"
    assert normalize_image_name("docker.io/foo.bar/app") == "docker.io/foo.bar/app"
    assert normalize_image_name("docker.io/library/foo.bar/app") == "library/foo.bar/app"
    assert parse_image_ref(normalize_image_name("docker.io/foo.bar/app")).registry == "docker.io"


if __name__ == "__main__":
    unittest.main()
