"""Unit tests for the membership check API."""

import socket
import time
from pathlib import Path
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from dispatchers.api import ApiServer, create_app, parse_listen_addr
from dispatchers.errors import ServeError
from dispatchers.sets import SetDefinition
from dispatchers.syncer import DispatcherSets, Notifier


@pytest.fixture
def member_set(make_set):
    return make_set(1, ["10.0.0.1:5060"])


@pytest.fixture
def registry(tmp_path: Path, member_set) -> DispatcherSets:
    registry = DispatcherSets(
        output_filename=str(tmp_path / "dispatcher.list"),
        notifier=Notifier("127.0.0.1", "9998", invoke=lambda *args: None),
        source_factory=lambda d: member_set,
    )
    registry.add(SetDefinition(id=1, namespace="voip", name="asterisk"))
    return registry


@pytest.fixture
def client(registry: DispatcherSets) -> TestClient:
    return TestClient(create_app(registry))


class TestCheck:
    def test_member_is_found(self, client: TestClient) -> None:
        response = client.get("/check/1/10.0.0.1:5060")

        assert response.status_code == 200
        assert response.content == b""

    def test_non_member_is_not_found(self, client: TestClient) -> None:
        assert client.get("/check/1/10.0.0.9:5060").status_code == 404

    def test_unknown_set_is_not_found(self, client: TestClient) -> None:
        assert client.get("/check/9/10.0.0.1:5060").status_code == 404

    def test_non_numeric_set_is_bad_request(self, client: TestClient) -> None:
        assert client.get("/check/x/10.0.0.1:5060").status_code == 400

    def test_non_ascii_digits_are_bad_request(self, client: TestClient) -> None:
        # Arabic-Indic digit one
        assert client.get("/check/١/10.0.0.1:5060").status_code == 400

    def test_head_answers_like_get(self, client: TestClient) -> None:
        assert client.head("/check/1/10.0.0.1:5060").status_code == 200
        assert client.head("/check/1/10.0.0.9:5060").status_code == 404
        assert client.head("/check/x/10.0.0.1:5060").status_code == 400

    @pytest.mark.parametrize(
        "path",
        ["/check/", "/check/1", "/check/1/10.0.0.1:5060/extra", "/check/1/10.0.0.1:5060/"],
    )
    def test_wrong_segment_count_is_bad_request(self, client: TestClient, path: str) -> None:
        assert client.get(path).status_code == 400

    def test_removed_member_is_no_longer_found(self, client: TestClient, member_set) -> None:
        assert client.get("/check/1/10.0.0.1:5060").status_code == 200

        member_set.set_hosts(["10.0.0.2:5060"])

        assert client.get("/check/1/10.0.0.1:5060").status_code == 404
        assert client.get("/check/1/10.0.0.2:5060").status_code == 200


class TestOtherRoutes:
    @pytest.mark.parametrize("path", ["/", "/check", "/health", "/checks/1/10.0.0.1:5060"])
    def test_unknown_paths_are_not_found(self, client: TestClient, path: str) -> None:
        response = client.get(path)

        assert response.status_code == 404
        assert response.content == b""

    def test_other_methods_are_not_found(self, client: TestClient) -> None:
        assert client.post("/check/1/10.0.0.1:5060").status_code == 404


class TestListenAddr:
    def test_port_only_binds_all_interfaces(self) -> None:
        assert parse_listen_addr(":8080") == ("0.0.0.0", 8080)

    def test_host_and_port(self) -> None:
        assert parse_listen_addr("127.0.0.1:9090") == ("127.0.0.1", 9090)

    def test_bracketed_ipv6(self) -> None:
        assert parse_listen_addr("[::1]:8080") == ("::1", 8080)

    @pytest.mark.parametrize("addr", ["8080", "localhost:", "localhost:http"])
    def test_invalid_addresses(self, addr: str) -> None:
        with pytest.raises(ValueError):
            parse_listen_addr(addr)


class TestApiServer:
    def test_start_and_graceful_stop(self, registry: DispatcherSets) -> None:
        server = ApiServer(registry, "127.0.0.1:0")

        server.start(timeout_seconds=5)
        assert server._server.started is True

        server.stop(timeout_seconds=5)
        assert server._server.should_exit is True
        assert server._thread is None

    def test_start_fails_when_address_in_use(self, registry: DispatcherSets) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as taken:
            taken.bind(("127.0.0.1", 0))
            taken.listen(1)
            port = taken.getsockname()[1]

            server = ApiServer(registry, f"127.0.0.1:{port}")
            with pytest.raises(ServeError):
                server.start(timeout_seconds=5)

    def test_start_gives_up_when_server_never_comes_up(self, registry: DispatcherSets) -> None:
        server = ApiServer(registry, "127.0.0.1:0")

        def never_started() -> None:
            while not server._server.should_exit:
                time.sleep(0.01)

        with patch.object(server._server, "run", side_effect=never_started):
            with pytest.raises(ServeError, match="did not start"):
                server.start(timeout_seconds=0.1)

        assert server._server.should_exit is True
