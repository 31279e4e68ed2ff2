import pytest
from click.testing import CliRunner

from config import load_settings
from conftest import SoftPiv
from kbmctl import Context, cli


@pytest.fixture
def ctx(piv: SoftPiv, tmp_path) -> Context:
    settings = load_settings(str(tmp_path / "absent.yaml"), kbmapi_url="http://kbmapi.test")
    return Context(settings, piv)


def _invoke(ctx: Context, *args: str, env: dict | None = None):
    return CliRunner().invoke(cli, list(args), obj=ctx, env=env)


def test_register_then_get_pin(ctx: Context, mock_kbmapi) -> None:
    registered = _invoke(ctx, "register-pivtoken", "--cn-uuid", "cn-1")
    assert registered.exit_code == 0, registered.output
    rtoken = registered.stdout.strip()
    assert rtoken

    pin = _invoke(ctx, "get-pin")
    assert pin.exit_code == 0, pin.output
    assert pin.stdout.strip().isdigit()
    assert mock_kbmapi[-1]["path"] == f"/pivtokens/{ctx.backend.guid()}/pin"


def test_new_rtoken(ctx: Context, mock_kbmapi) -> None:
    first = _invoke(ctx, "register-pivtoken", "--cn-uuid", "cn-1").stdout.strip()
    result = _invoke(ctx, "new-rtoken", "--guid", ctx.backend.guid())
    assert result.exit_code == 0, result.output
    assert result.stdout.strip() not in ("", first)


def test_replace_pivtoken_with_env_token(ctx: Context, mock_kbmapi, tmp_path) -> None:
    rtoken = _invoke(ctx, "register-pivtoken", "--cn-uuid", "cn-1").stdout.strip()
    old_guid = ctx.backend.guid()

    new_ctx = Context(ctx.settings, SoftPiv(guid="NEWGUID0000000000000000000000000"))
    result = _invoke(
        new_ctx, "replace-pivtoken", "--guid", old_guid, "--cn-uuid", "cn-1",
        env={"KBMCTL_RECOVERY_TOKEN": rtoken},
    )
    assert result.exit_code == 0, result.output
    assert result.stdout.strip()
    assert mock_kbmapi[-1]["path"] == f"/pivtokens/{old_guid}/replace"


def test_locked_token_exits_nonzero_without_http(ctx: Context, mock_kbmapi) -> None:
    ctx.backend.locked = True
    result = _invoke(ctx, "get-pin", "--guid", "GUID1")
    assert result.exit_code == 1
    assert result.stdout == ""
    assert mock_kbmapi == []


def test_empty_recovery_token_exits_nonzero_without_http(ctx: Context, mock_kbmapi) -> None:
    result = _invoke(
        ctx, "replace-pivtoken", "--guid", "OLD", "--cn-uuid", "cn-1", "--recovery-token", "",
    )
    assert result.exit_code == 1
    assert mock_kbmapi == []


def test_server_rejection_exits_nonzero(ctx: Context, mock_kbmapi) -> None:
    result = _invoke(ctx, "get-pin", "--guid", "UNKNOWN")
    assert result.exit_code == 1
    assert result.stdout == ""
