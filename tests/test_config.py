import pytest
from eth_account import Account

from relayer.chain import ChainClient
from relayer.config import RelayerConfig, is_relayer_configured
from relayer.errors import ConfigurationError

V1 = "0x" + "01" * 20
V2 = "0x" + "02" * 20
MIGRATOR = "0x" + "03" * 20


@pytest.fixture
def account():
    return Account.create()


def _env(account, **overrides):
    env = {
        "MIGRATION_RELAYER_PRIVATE_KEY": account.key.hex(),
        "MIGRATION_RELAYER_ADDRESS": account.address,
        "V1_TOKEN_ADDRESS": V1,
        "V2_TOKEN_ADDRESS": V2,
        "MIGRATOR_ADDRESS": MIGRATOR,
    }
    env.update(overrides)
    return env


def test_from_env_with_defaults(account):
    config = RelayerConfig.from_env(_env(account))

    assert config.relayer_address == account.address
    assert config.rpc_url == "https://mainnet.base.org"
    assert config.confirmations == 2
    assert config.max_blocks_per_poll == 2000
    assert config.poll_interval_seconds == 15.0


def test_from_env_reads_tuning_knobs(account):
    config = RelayerConfig.from_env(_env(
        account,
        MIGRATION_CONFIRMATIONS="5",
        MIGRATION_POLL_INTERVAL_SECONDS="2.5",
        BASE_RPC_URL="http://localhost:8545",
    ))
    assert config.confirmations == 5
    assert config.poll_interval_seconds == 2.5
    assert config.rpc_url == "http://localhost:8545"


def test_address_match_is_case_insensitive(account):
    RelayerConfig.from_env(_env(account, MIGRATION_RELAYER_ADDRESS=account.address.lower()))


def test_private_key_is_not_in_repr(account):
    config = RelayerConfig.from_env(_env(account))
    assert account.key.hex() not in repr(config)


def test_missing_settings_are_all_named(account):
    env = _env(account)
    del env["V2_TOKEN_ADDRESS"]
    del env["MIGRATOR_ADDRESS"]

    with pytest.raises(ConfigurationError) as exc:
        RelayerConfig.from_env(env)
    assert "V2_TOKEN_ADDRESS" in str(exc.value)
    assert "MIGRATOR_ADDRESS" in str(exc.value)


def test_signer_mismatch_is_fatal_and_does_not_leak_key(account):
    other = Account.create()
    with pytest.raises(ConfigurationError) as exc:
        RelayerConfig.from_env(_env(account, MIGRATION_RELAYER_ADDRESS=other.address))
    assert "does not match" in str(exc.value)
    assert account.key.hex() not in str(exc.value)


def test_invalid_key_is_fatal(account):
    with pytest.raises(ConfigurationError) as exc:
        RelayerConfig.from_env(_env(account, MIGRATION_RELAYER_PRIVATE_KEY="0x1234"))
    assert "0x1234" not in str(exc.value)


def test_bad_number_is_fatal(account):
    with pytest.raises(ConfigurationError):
        RelayerConfig.from_env(_env(account, MIGRATION_MAX_BLOCKS_PER_POLL="lots"))
    with pytest.raises(ConfigurationError):
        RelayerConfig.from_env(_env(account, MIGRATION_MAX_BLOCKS_PER_POLL="0"))


def test_is_relayer_configured(account):
    assert is_relayer_configured(_env(account))
    assert not is_relayer_configured(_env(account, MIGRATOR_ADDRESS=""))
    assert not is_relayer_configured({})


def test_chain_client_rejects_mismatched_signer(account):
    other = Account.create()
    with pytest.raises(ConfigurationError):
        ChainClient(
            rpc_url="http://127.0.0.1:1",
            private_key=account.key.hex(),
            relayer_address=other.address,
            v1_token_address=V1,
            v2_token_address=V2,
            migrator_address=MIGRATOR,
        )


def test_chain_client_binds_to_signer_address(account):
    client = ChainClient(
        rpc_url="http://127.0.0.1:1",
        private_key=account.key.hex(),
        relayer_address=account.address.lower(),
        v1_token_address=V1,
        v2_token_address=V2,
        migrator_address=MIGRATOR,
    )
    assert client.address == account.address
