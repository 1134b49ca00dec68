"""Tests for image building and publishing through the Docker client."""

import pytest
from docker.errors import APIError, ImageNotFound

from shipbot.registry import ImageBuildError, ImageRegistry, image_tag_for, normalize_image_name


class FakeImage:
    def __init__(self, image_id):
        self.id = image_id


class FakeImages:
    def __init__(self, push_chunks=(), known=None):
        self.push_chunks = list(push_chunks)
        self.known = known or {}
        self.pushed = []

    def push(self, repository, tag=None, stream=False, decode=False):
        self.pushed.append((repository, tag, stream, decode))
        return iter(self.push_chunks)

    def get(self, name):
        if name not in self.known:
            raise ImageNotFound(f"No such image: {name}")
        return FakeImage(self.known[name])


class FakeApi:
    def __init__(self, build_chunks=(), error=None):
        self.build_chunks = list(build_chunks)
        self.error = error
        self.builds = []

    def build(self, **kwargs):
        self.builds.append(kwargs)
        if self.error:
            raise self.error
        return iter(self.build_chunks)


class FakeDockerClient:
    def __init__(self, build_chunks=(), push_chunks=(), known=None, build_error=None):
        self.api = FakeApi(build_chunks, build_error)
        self.images = FakeImages(push_chunks, known)


def make_registry(**client_kwargs):
    client = FakeDockerClient(**client_kwargs)
    return ImageRegistry("registry.local:5000/", dockerfile="Dockerfile", client=client), client


class TestImageNames:
    def test_normalize(self):
        assert normalize_image_name("Proj_Shop") == "proj_shop"
        assert normalize_image_name("My Project!") == "my-project"

    def test_tag_is_short_sha(self):
        assert image_tag_for("ABC1234DEF") == "abc1234"

    def test_image_ref(self):
        registry = ImageRegistry("registry.local:5000/")

        assert registry.image_ref("proj_shop", "abc1234") == "registry.local:5000/proj_shop:abc1234"


class TestBuild:
    """Tests for streaming image builds."""

    def test_stream_lines_forwarded(self, tmp_path):
        registry, client = make_registry(
            build_chunks=[
                {"stream": "Step 1/2 : FROM scratch\n"},
                {"aux": {"ID": "sha256:feed"}},
                {"stream": " ---> abc\nStep 2/2 : CMD run\n"},
            ]
        )
        lines = []

        ref = registry.build(str(tmp_path), "proj_shop", "abc1234", on_line=lines.append)

        assert ref == "registry.local:5000/proj_shop:abc1234"
        assert lines == ["Step 1/2 : FROM scratch\n", " ---> abc\n", "Step 2/2 : CMD run\n"]
        call = client.api.builds[0]
        assert call["path"] == str(tmp_path)
        assert call["tag"] == ref
        assert call["dockerfile"] == "Dockerfile"
        assert call["decode"] is True
        assert call["labels"] == {"shipbot.managed": "true"}

    def test_error_chunk_fails_build(self, tmp_path):
        registry, _ = make_registry(
            build_chunks=[
                {"stream": "Step 1/1 : RUN make\n"},
                {"error": "The command '/bin/sh -c make' returned a non-zero code: 2\n",
                 "errorDetail": {"code": 2, "message": "The command '/bin/sh -c make' returned a non-zero code: 2"}},
            ]
        )
        lines = []

        with pytest.raises(ImageBuildError, match="non-zero code: 2"):
            registry.build(str(tmp_path), "proj_shop", "abc1234", on_line=lines.append)

        assert lines == ["Step 1/1 : RUN make\n"]

    def test_daemon_error_wrapped(self, tmp_path):
        registry, _ = make_registry(build_error=APIError("daemon unavailable"))

        with pytest.raises(ImageBuildError, match="daemon unavailable"):
            registry.build(str(tmp_path), "proj_shop", "abc1234")


class TestPushAndInspect:
    """Tests for publishing and image lookup."""

    def test_push_reports_status(self):
        registry, client = make_registry(
            push_chunks=[
                {"status": "The push refers to repository [registry.local:5000/proj_shop]"},
                {"status": "Pushing", "progressDetail": {"current": 1}, "progress": "[=>  ]", "id": "a1"},
                {"status": "Pushed", "id": "a1"},
                {"status": "abc1234: digest: sha256:beef size: 528"},
            ]
        )
        lines = []

        ref = registry.push("proj_shop", "abc1234", on_line=lines.append)

        assert ref == "registry.local:5000/proj_shop:abc1234"
        assert client.images.pushed == [("registry.local:5000/proj_shop", "abc1234", True, True)]
        assert lines == [
            "The push refers to repository [registry.local:5000/proj_shop]\n",
            "a1: Pushed\n",
            "abc1234: digest: sha256:beef size: 528\n",
        ]

    def test_push_error_chunk(self):
        registry, _ = make_registry(
            push_chunks=[
                {"status": "Preparing", "id": "a1"},
                {"errorDetail": {"message": "unauthorized: authentication required"},
                 "error": "unauthorized: authentication required"},
            ]
        )

        with pytest.raises(ImageBuildError, match="unauthorized"):
            registry.push("proj_shop", "abc1234")

    def test_inspect_returns_id(self):
        registry, _ = make_registry(known={"registry.local:5000/proj_shop:abc1234": "sha256:c0ffee"})

        assert registry.inspect("proj_shop", "abc1234") == "sha256:c0ffee"

    def test_inspect_missing_image(self):
        registry, _ = make_registry()

        with pytest.raises(ImageBuildError, match="не найден"):
            registry.inspect("proj_shop", "abc1234")
