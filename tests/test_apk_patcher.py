import subprocess
from pathlib import Path

from apk_patcher import (PatchArgs, add_auto_patch, apply_patches, auto_patch_name,
                         build_patch_command, list_patches)

LISTING = "INFO: Name: Hide ads\nINFO: Name: GmsCore support\nINFO: Name: Theme\n"


class FakeRunner:
    def __init__(self, returncode=0, stdout="", stderr="", create=None):
        self.returncode, self.stdout, self.stderr = returncode, stdout, stderr
        self.create = create
        self.calls = []

    def __call__(self, cmd, cwd=None, capture_output=True, text=True):
        self.calls.append(list(cmd))
        if self.create is not None:
            Path(self.create).write_bytes(b"patched")
        return subprocess.CompletedProcess(cmd, self.returncode, self.stdout, self.stderr)


def test_tokens_keep_names_with_spaces_intact():
    args = PatchArgs().exclude(["Hide ads"]).include(["Custom branding"]).exclusive().force()
    assert list(args) == ["-d", "Hide ads", "-e", "Custom branding", "--exclusive", "-f"]


def test_force_is_added_once():
    assert list(PatchArgs().force().force()) == ["-f"]


def test_rip_libs_keeps_only_the_target_abi():
    assert list(PatchArgs().rip_libs("arm64-v8a")) == [
        "--rip-lib", "x86_64", "--rip-lib", "x86", "--rip-lib", "armeabi-v7a"]
    assert list(PatchArgs().rip_libs("arm-v7a"))[-1] == "arm64-v8a"
    assert len(PatchArgs().rip_libs("all")) == 4


def test_auto_patch_is_included_once():
    assert auto_patch_name(LISTING) == "GmsCore support"

    args = PatchArgs()
    assert add_auto_patch(args, LISTING) == "GmsCore support"
    assert list(args) == ["-e", "GmsCore support"]

    args = PatchArgs().include(["GmsCore support"])
    add_auto_patch(args, LISTING)
    assert list(args).count("GmsCore support") == 1


def test_auto_patch_respects_explicit_exclusion():
    args = PatchArgs().exclude(["GmsCore support"])
    assert add_auto_patch(args, LISTING) is None
    assert "-e" not in list(args)


def test_patch_command_layout(tmp_path):
    (tmp_path / "ks.keystore").write_bytes(b"ks")
    args = PatchArgs().exclude(["Hide ads"]).extend(["-O", "x=1"])
    cmd = build_patch_command(Path("stock.apk"), Path("out.apk"), args, Path("cli.jar"),
                              Path("p.rvp"), tmp_path, ["-Xmx2g"])
    assert cmd == ["java", "-Xmx2g", "-jar", "cli.jar", "patch", "-b", "p.rvp", "-o", "out.apk",
                   f"--keystore={tmp_path / 'ks.keystore'}", "--purge",
                   "-d", "Hide ads", "-O", "x=1", "stock.apk"]


def test_apply_patches_success_and_failure(tmp_path):
    out = tmp_path / "out.apk"
    ok = FakeRunner(create=out)
    assert apply_patches(tmp_path / "stock.apk", out, PatchArgs(), tmp_path / "cli.jar",
                         tmp_path / "p.rvp", tmp_path, runner=ok)
    assert ok.calls[0][0] == "java"

    out.unlink()
    failed = FakeRunner(returncode=1, stderr="Exception in thread main")
    assert not apply_patches(tmp_path / "stock.apk", out, PatchArgs(), tmp_path / "cli.jar",
                             tmp_path / "p.rvp", tmp_path, runner=failed)

    silent = FakeRunner()
    assert not apply_patches(tmp_path / "stock.apk", out, PatchArgs(), tmp_path / "cli.jar",
                             tmp_path / "p.rvp", tmp_path, runner=silent)


def test_list_patches_arguments():
    runner = FakeRunner(stdout=LISTING)
    assert list_patches(Path("cli.jar"), Path("p.rvp"), "com.app", runner=runner) == LISTING
    assert runner.calls[0][-6:] == ["list-patches", "p.rvp", "-f", "com.app", "-v", "-p"]
    assert list_patches(Path("cli.jar"), Path("p.rvp"), "com.app", runner=FakeRunner(returncode=2)) is None
