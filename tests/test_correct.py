import gzip
from pathlib import Path

import pytest

from fragflash.barcode import cb_string_to_u64
from fragflash.codec import FragmentWriter, iter_fragments
from fragflash.config import BarcodeConfig
from fragflash.correct import BarcodeCorrector, CorrectionPolicy, correct_fragments, load_whitelist
from fragflash.errors import FatalConfigError
from fragflash.models import BarcodeFragment

ALL_A = "A" * 16
ONE_OFF = "A" * 15 + "C"


def _frag(cb: str) -> BarcodeFragment:
    return BarcodeFragment(chr=0, start=10, end=100, cb=cb_string_to_u64(cb))


def test_exact_policy():
    corrector = BarcodeCorrector(whitelist={cb_string_to_u64(ALL_A)}, policy=CorrectionPolicy.EXACT)
    assert corrector.correct(_frag(ALL_A)) == _frag(ALL_A)
    assert corrector.correct(_frag(ONE_OFF)) is None
    assert corrector.stats.exact == 1
    assert corrector.stats.rejected == 1


def test_edit1_policy_relabels():
    corrector = BarcodeCorrector(whitelist={0}, policy="edit1")
    assert corrector.policy is CorrectionPolicy.EDIT1
    assert corrector.correct(_frag(ALL_A)).cb == 0
    assert corrector.correct(_frag(ONE_OFF)).cb == 0
    assert corrector.correct(_frag("A" * 14 + "CC")) is None
    assert corrector.stats.to_dict()["corrected"] == 1


def test_edit1_ambiguous_is_rejected():
    whitelist = {cb_string_to_u64("A" * 15 + "G"), cb_string_to_u64("A" * 14 + "CA")}
    corrector = BarcodeCorrector(whitelist=whitelist, policy=CorrectionPolicy.EDIT1)
    assert corrector.correct(_frag(ALL_A)) is None
    assert corrector.stats.ambiguous == 1
    assert corrector.stats.rejected == 1


def test_complement_policy():
    corrector = BarcodeCorrector(whitelist={cb_string_to_u64("T" * 16)}, policy=CorrectionPolicy.COMPLEMENT)
    assert corrector.correct(_frag(ALL_A)).cb == cb_string_to_u64("T" * 16)
    assert corrector.correct(_frag(ONE_OFF)) is None


def test_unknown_policy():
    with pytest.raises(FatalConfigError):
        BarcodeCorrector(whitelist={0}, policy="fuzzy")


def test_load_whitelist(tmp_path: Path):
    wl = tmp_path / "wl.txt.gz"
    with gzip.open(wl, "wt") as fh:
        fh.write("AAAC\n\nGGGT\n")
    barcode = BarcodeConfig(length=4)
    assert load_whitelist(wl, barcode=barcode) == {cb_string_to_u64("AAAC"), cb_string_to_u64("GGGT")}
    assert load_whitelist(wl, barcode=barcode, forward=False) == {
        cb_string_to_u64("GTTT"),
        cb_string_to_u64("ACCC"),
    }


def test_load_whitelist_errors(tmp_path: Path):
    bad = tmp_path / "bad.txt"
    bad.write_text("AAAC\nAAA\n")
    with pytest.raises(FatalConfigError):
        load_whitelist(bad, barcode=BarcodeConfig(length=4))

    empty = tmp_path / "empty.txt"
    empty.write_text("\n")
    with pytest.raises(FatalConfigError):
        load_whitelist(empty, barcode=BarcodeConfig(length=4))

    with pytest.raises(FatalConfigError):
        load_whitelist(tmp_path / "missing.txt")


def test_correct_fragments_file(tmp_path: Path):
    src = tmp_path / "in.frag"
    with FragmentWriter(src) as w:
        for cb in [ALL_A, ONE_OFF, "C" * 16]:
            w.write(_frag(cb))

    corrector = BarcodeCorrector(whitelist={0}, policy=CorrectionPolicy.EDIT1)
    out = correct_fragments(in_path=src, out_path=None, corrector=corrector, progress_bar=False)
    assert out == tmp_path / "in.corrected.frag"
    assert [f.cb for f in iter_fragments(out, BarcodeFragment)] == [0, 0]
    assert corrector.stats.total == 3


def test_correct_fragments_refuses_in_place_output(tmp_path: Path):
    src = tmp_path / "in.frag"
    with FragmentWriter(src) as w:
        w.write(_frag(ALL_A))
    corrector = BarcodeCorrector(whitelist={0}, policy=CorrectionPolicy.EXACT)
    with pytest.raises(FatalConfigError):
        correct_fragments(in_path=src, out_path=src, corrector=corrector, progress_bar=False)
    assert list(iter_fragments(src, BarcodeFragment)) == [_frag(ALL_A)]
