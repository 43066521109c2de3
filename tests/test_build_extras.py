from build_extras import combine_logs, main, separate_config

CONFIG = """\
# global
parallel-jobs = 1
patches-source = "anddea/revanced-patches"

[PatchSources.main]
source = "anddea/revanced-patches"

[YouTube]
archive-dlurl = "https://a.example/com.google.android.youtube"
# keep me

[Music]
archive-dlurl = "https://a.example/com.google.android.apps.youtube.music"
"""


def test_separate_config(tmp_path):
    cfg = tmp_path / "config.toml"
    cfg.write_text(CONFIG, encoding="utf-8")
    out = tmp_path / "youtube.toml"
    assert separate_config(cfg, "youtube", out)
    text = out.read_text(encoding="utf-8")
    assert "parallel-jobs = 1" in text
    assert "# global" not in text
    assert "[PatchSources.main]" in text
    assert "[YouTube]" in text
    assert "# keep me" in text
    assert "[Music]" not in text


def test_separate_config_unknown_key(tmp_path):
    cfg = tmp_path / "config.toml"
    cfg.write_text(CONFIG, encoding="utf-8")
    assert main(["separate-config", str(cfg), "Nope", str(tmp_path / "o.toml")]) == 1
    assert not (tmp_path / "o.toml").exists()


def test_combine_logs(tmp_path, capsys):
    for i, body in enumerate([
        "🟢 » YouTube: `19.09.36`\n\n▶️ Install MicroG-RE\n\nSkipped:\nMusic: failed\n",
        "🟢 » Reddit: `2024.17.0`\n\n▶️ Install MicroG-RE\n\nSkipped:\nMusic: failed\n",
    ]):
        d = tmp_path / f"build-log-{i}"
        d.mkdir()
        (d / "build.md").write_text(body, encoding="utf-8")

    text = combine_logs(tmp_path)
    assert text.count("MicroG") == 1
    assert text.count("Music: failed") == 1
    assert text.index("YouTube") < text.index("Reddit") < text.index("Skipped:")

    assert main(["combine-logs", str(tmp_path)]) == 0
    assert "Reddit" in capsys.readouterr().out


def test_no_command_prints_help():
    assert main([]) == 1
