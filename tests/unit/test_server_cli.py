"""Server command line: which routes the entry point mounts."""

from tokensale.server import LedgerServer, build_server


def paths(srv: LedgerServer) -> set:
    return {route.path for route in srv.app.routes}


class TestBuildServer:

    def test_chain_simulator_off_by_default(self):
        srv = build_server(["--admin-key", "k"])
        assert srv.chain is None
        assert "/chain/transfer" not in paths(srv)
        assert "/ws/events" in paths(srv)
        assert "/api/chain/transfers" in paths(srv)

    def test_constructor_default_matches(self):
        assert LedgerServer().chain is None

    def test_chain_flag_mounts_simulator(self):
        srv = build_server(["--chain"])
        assert srv.chain is not None
        assert "/chain/transfer" in paths(srv)

    def test_poll_chain_implies_chain(self):
        srv = build_server(["--poll-chain"])
        assert srv.chain is not None
        assert srv._poll_chain

    def test_config_flags(self):
        srv = build_server(["--api-port", "9090", "--supply-cap", "500", "--feed-key", "f"])
        assert srv.api_port == 9090
        assert str(srv.config.total_supply_cap) == "500"
        assert srv.config.feed_key == "f"
