import importlib.util
from pathlib import Path

import pytest

from guardian.service.runtime import Runtime

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_tenant.py"


@pytest.fixture(scope="module")
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_tenant", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def runtime(settings, clock):
    rt = Runtime(settings, clock=clock)
    yield rt
    rt.close()


def test_register_prints_credentials(bootstrap, runtime, capsys):
    code = bootstrap.run(["register", "--name", "Acme Shop", "--idle-timeout", "15"], runtime=runtime)

    assert code == 0
    tenant = runtime.tenants.list_tenants()[0]
    out = capsys.readouterr().out
    assert tenant.id in out
    assert tenant.secret in out
    assert tenant.idle_timeout_minutes == 15


def test_rotate_replaces_secret(bootstrap, runtime, capsys):
    tenant = runtime.tenants.register("Acme")

    code = bootstrap.run(["rotate", "--client-id", tenant.id], runtime=runtime)

    assert code == 0
    assert not runtime.tenants.validate(tenant.id, tenant.secret)
    new_secret = runtime.store.get_tenant(tenant.id).secret
    assert new_secret in capsys.readouterr().out


def test_rotate_unknown_tenant_fails(bootstrap, runtime):
    assert bootstrap.run(["rotate", "--client-id", "NOPE00"], runtime=runtime) == 1


def test_register_rejects_invalid_idle_timeout(bootstrap, runtime):
    assert bootstrap.run(["register", "--name", "Acme", "--idle-timeout", "-5"], runtime=runtime) == 1


def test_list_never_prints_secrets(bootstrap, runtime, capsys):
    tenant = runtime.tenants.register("Listed")

    assert bootstrap.run(["list"], runtime=runtime) == 0

    out = capsys.readouterr().out
    assert tenant.id in out
    assert tenant.secret not in out
