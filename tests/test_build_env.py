import os

from build_env import BuildEnv, load_env_file


def test_defaults_live_under_workdir(tmp_path):
    env = BuildEnv.from_environ(environ={}, workdir=tmp_path)
    assert env.temp_dir == tmp_path / "temp"
    assert env.build_dir == tmp_path / "build"
    assert env.log_file == tmp_path / "build.md"
    assert env.patch_cache_dir == tmp_path / "bin" / "patchcache"
    assert env.github_token is None
    assert not env.no_rebuild


def test_environment_overrides(tmp_path):
    env = BuildEnv.from_environ(environ={
        "TEMP_DIR": str(tmp_path / "t"), "GITHUB_TOKEN": "abc", "NORB": "true",
        "JAVA_OPTS": "-Xmx2g -Dfoo=bar", "OS": "Android",
    }, workdir=tmp_path)
    assert env.temp_dir == tmp_path / "t"
    assert env.github_token == "abc"
    assert env.no_rebuild
    assert env.java_opts == ["-Xmx2g", "-Dfoo=bar"]
    assert env.is_android


def test_dotenv_does_not_override_exported_values(tmp_path, monkeypatch):
    (tmp_path / ".env").write_text("GITHUB_TOKEN=from-file\nRVB_TEST_ONLY=1\n", encoding="utf-8")
    monkeypatch.setenv("GITHUB_TOKEN", "exported")
    monkeypatch.delenv("RVB_TEST_ONLY", raising=False)
    assert load_env_file(tmp_path)
    assert os.environ["GITHUB_TOKEN"] == "exported"
    assert os.environ["RVB_TEST_ONLY"] == "1"
    monkeypatch.delenv("RVB_TEST_ONLY")


def test_sweep_removes_only_scratch_files(tmp_path):
    env = BuildEnv.from_environ(environ={}, workdir=tmp_path)
    env.prepare()
    keep = env.temp_dir / "com.app-1.0-all.apk"
    keep.write_bytes(b"stock")
    cached = env.temp_dir / "org.xtmp.app-1.0-all.apk"
    cached.write_bytes(b"stock")
    (env.temp_dir / "tmp.abc123").write_bytes(b"half")
    (env.temp_dir / "patches-combined-tmp.x1").mkdir()
    (env.temp_dir / "sub").mkdir()
    (env.temp_dir / "sub" / "tmp.part").write_bytes(b"half")
    (env.temp_dir / "app-temporary-files").mkdir()

    assert env.sweep_temporaries() == 4
    assert sorted(p.name for p in env.temp_dir.iterdir() if p.is_file()) == sorted([keep.name, cached.name])


def test_clean(tmp_path):
    env = BuildEnv.from_environ(environ={}, workdir=tmp_path)
    env.prepare()
    env.log_file.write_text("x", encoding="utf-8")
    env.clean()
    assert not env.temp_dir.exists()
    assert not env.build_dir.exists()
    assert not env.log_file.exists()
    assert env.bin_dir.exists()
