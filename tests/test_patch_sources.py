import zipfile

import pytest

from app_config import ConfigStore
from artifact_fetcher import ResolvedArtifactPair
from build_errors import MissingSourceField, NoPatchSourcesResolved, PatchSourceError, UnknownPatchSource
from patch_sources import PatchSourceResolver, PatchTier, bundle_hash, classify
from tests.conftest import make_zip

SOURCES = {
    "PatchSources": {
        "privacy": {"source": "jkennethcarino/privacy-revanced-patches"},
        "main": {"source": "anddea/revanced-patches", "version": "dev"},
        "extra": {"source": "someone/other-patches"},
        "nosource": {"version": "1.0"},
    }
}


class FakeFetcher:
    def __init__(self, root, bundles):
        self.root = root
        self.bundles = bundles
        self.calls = []

    def prebuilts(self, cli_repo, cli_version, patches_repo, patches_version):
        self.calls.append(patches_repo)
        cli = self.root / f"{cli_repo.replace('/', '-')}.jar"
        cli.write_bytes(b"cli")
        return ResolvedArtifactPair(cli=cli, patches=self.bundles[patches_repo])


@pytest.fixture
def resolver(tmp_path):
    bundles = {
        "anddea/revanced-patches": make_zip(tmp_path / "main.rvp", {"shared/Patch.class": b"main",
                                                                   "main/Only.class": b"m"}),
        "jkennethcarino/privacy-revanced-patches": make_zip(tmp_path / "privacy.rvp",
                                                            {"shared/Patch.class": b"privacy"}),
        "someone/other-patches": make_zip(tmp_path / "other.rvp", {"shared/Patch.class": b"other",
                                                                  "other/Only.class": b"o"}),
    }
    fetcher = FakeFetcher(tmp_path, bundles)
    return PatchSourceResolver(ConfigStore(SOURCES), fetcher, tmp_path / "bin" / "patchcache",
                               tmp_path / "temp")


def test_classify():
    assert classify("privacy", "anyone/anything") is PatchTier.PRIVACY
    assert classify("p", "x/Privacy_revanced-patches") is PatchTier.PRIVACY
    assert classify("p", "x/privacy-revanced") is PatchTier.PRIVACY
    # only the leading P may be upper case
    assert classify("p", "x/Privacy_ReVanced-patches") is PatchTier.SECONDARY
    assert classify("main", "inotia00/revanced-patches") is PatchTier.PRIMARY
    assert classify("extra", "someone/other-patches") is PatchTier.SECONDARY


def test_single_source_is_returned_without_merging(resolver, monkeypatch):
    monkeypatch.setattr(resolver, "merge", lambda *a: pytest.fail("merge called"))
    pair = resolver.resolve("YouTube", ["main"])
    assert pair.patches == resolver.fetcher.bundles["anddea/revanced-patches"]
    assert not resolver.cache_dir.exists() or not any(resolver.cache_dir.iterdir())


def test_privacy_wins_conflicts_regardless_of_listed_order(resolver):
    pair = resolver.resolve("YouTube", ["privacy", "extra", "main"])
    with zipfile.ZipFile(pair.patches) as z:
        assert z.read("shared/Patch.class") == b"privacy"
        assert z.read("main/Only.class") == b"m"
        assert z.read("other/Only.class") == b"o"
    assert pair.patches.parent == resolver.cache_dir
    assert pair.patches.name.startswith("combined-")
    # first resolved CLI is kept for the whole bundle
    assert pair.cli.name == "ReVanced-revanced-cli.jar"


def test_secondary_overrides_primary(resolver):
    pair = resolver.resolve("YouTube", ["extra", "main"])
    with zipfile.ZipFile(pair.patches) as z:
        assert z.read("shared/Patch.class") == b"other"


def test_second_resolve_is_a_cache_hit(resolver, monkeypatch):
    merges = []
    real_merge = resolver.merge

    def counting_merge(bundles, dest):
        merges.append(dest)
        return real_merge(bundles, dest)

    monkeypatch.setattr(resolver, "merge", counting_merge)
    first = resolver.resolve("YouTube", ["main", "privacy"])
    second = resolver.resolve("YouTube", ["main", "privacy"])
    assert first.patches == second.patches
    assert len(merges) == 1
    # staging directories are always removed
    assert not any((resolver.staging_root).glob("patches-*"))


def test_bundle_hash_depends_on_order_and_versions():
    a = bundle_hash(["main:anddea/revanced-patches@dev", "privacy:x/privacy-revanced@latest"])
    b = bundle_hash(["privacy:x/privacy-revanced@latest", "main:anddea/revanced-patches@dev"])
    c = bundle_hash(["main:anddea/revanced-patches@1.0", "privacy:x/privacy-revanced@latest"])
    assert len({a, b, c}) == 3


def test_unknown_and_incomplete_sources(resolver):
    with pytest.raises(UnknownPatchSource):
        resolver.resolve("YouTube", ["main", "ghost"])
    with pytest.raises(MissingSourceField):
        resolver.resolve("YouTube", ["nosource"])
    with pytest.raises(NoPatchSourcesResolved):
        resolver.resolve("YouTube", ["", ""])


def test_corrupt_bundle_fails_cleanly(resolver, tmp_path):
    bad = tmp_path / "bad.rvp"
    bad.write_bytes(b"not a zip")
    dest = resolver.cache_dir / "combined-x.jar"
    with pytest.raises(PatchSourceError, match="Failed combining patches"):
        resolver.merge([resolver.fetcher.bundles["anddea/revanced-patches"], bad], dest)
    assert not dest.exists()
    assert not list(resolver.cache_dir.glob("tmp.*"))
    assert not list(resolver.staging_root.glob("patches-*"))
