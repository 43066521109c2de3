import pytest

import builder


def test_clean_command(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for d in ("temp", "build", "logs"):
        (tmp_path / d).mkdir()
    (tmp_path / "build.md").write_text("x", encoding="utf-8")
    assert builder.main(["clean"]) == 0
    assert not any((tmp_path / d).exists() for d in ("temp", "build", "logs", "build.md"))


def test_missing_config_exits_1(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(builder, "check_tools", lambda: True)
    assert builder.main(["missing.toml"]) == 1


def test_invalid_config_exits_1_before_building(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(builder, "check_tools", lambda: True)
    (tmp_path / "config.toml").write_text('[App]\narch = "mips"\narchive-dlurl = "https://a/x"\n',
                                          encoding="utf-8")
    assert builder.main([]) == 1
    assert not (tmp_path / "build").exists()


def test_interrupt_sweeps_and_exits_130(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(builder, "check_tools", lambda: True)
    (tmp_path / "temp").mkdir()
    (tmp_path / "temp" / "tmp.partial").write_bytes(b"x")

    def interrupted(config, env):
        raise KeyboardInterrupt

    exits = []

    def fake_exit(code):
        exits.append(code)
        raise SystemExit(code)

    monkeypatch.setattr(builder, "run", interrupted)
    monkeypatch.setattr(builder.os, "_exit", fake_exit)
    with pytest.raises(SystemExit):
        builder.main([])
    assert exits == [130]
    assert not (tmp_path / "temp" / "tmp.partial").exists()
