"""Smoke test for the benchmark CLI on the in-memory store."""

import pytest

from tenant_keyring.benchmark import main


def test_benchmark_runs_in_memory(monkeypatch, capsys):
    monkeypatch.setenv("DATABASE_URL", "")
    monkeypatch.setenv("TENANT_KEYRING_MASTER_KEY", "")

    main(["--tenants", "3", "--ops", "12"])

    out = capsys.readouterr().out
    assert "in-memory key store" in out
    assert "decrypt after rotation" in out
    # 3 creates + 12 encrypts + 24 decrypts + 3 rotations
    assert "Audit events: 42" in out


def test_rejects_non_positive_counts():
    with pytest.raises(SystemExit):
        main(["--ops", "0"])
