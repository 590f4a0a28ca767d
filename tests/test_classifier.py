from pathlib import Path
from typing import List, Optional

import pysam
import pytest

from fragflash.barcode import cb_string_to_u64
from fragflash.classifier import (
    AlignmentClassifier,
    ReadNameSuffixExtractor,
    TagExtractor,
    filter_bam,
    soft_clip_pos,
    soft_clips,
)
from fragflash.codec import iter_fragments
from fragflash.config import ClassifierConfig
from fragflash.errors import FatalConfigError, FatalInputError
from fragflash.models import BarcodeFragment
from fragflash.toy_data import make_pair, make_toy_data

CB = "ACGTACGTACGTACGT"


def make_read(
    start: int,
    length: int,
    *,
    reverse: bool = False,
    mapq: int = 40,
    tid: int = 0,
    cigar: Optional[list] = None,
    name: str = f"read1:{CB}",
) -> pysam.AlignedSegment:
    cigar = cigar if cigar is not None else [(0, length)]
    qlen = sum(n for op, n in cigar if op in (0, 1, 4))
    a = pysam.AlignedSegment()
    a.query_name = name
    a.query_sequence = "A" * qlen
    a.flag = 0x1 | 0x2 | (0x10 | 0x80 if reverse else 0x20 | 0x40)
    a.reference_id = tid
    a.reference_start = start
    a.mapping_quality = mapq
    a.cigartuples = cigar
    a.query_qualities = pysam.qualitystring_to_array("I" * qlen)
    return a


def _classifier(**kwargs) -> AlignmentClassifier:
    config = ClassifierConfig(**kwargs)
    return AlignmentClassifier(config, ReadNameSuffixExtractor(16))


def _pair(**rev_kwargs) -> List[pysam.AlignedSegment]:
    return [make_read(100, 20), make_read(130, 20, reverse=True, **rev_kwargs)]


def test_passing_pair_becomes_tn5_adjusted_fragment():
    clf = _classifier()
    frag = clf.classify(_pair())
    assert frag == BarcodeFragment(chr=0, start=104, end=145, cb=cb_string_to_u64(CB))
    assert clf.stats.total_reads == 1
    assert clf.stats.num_skipped == 0


def test_mate_order_does_not_matter():
    clf = _classifier()
    up, down = _pair()
    assert clf.classify([down, up]) == clf.classify([up, down])


def test_soft_clips_restore_outer_coordinates():
    fwd = make_read(100, 20, cigar=[(4, 5), (0, 15)])
    rev = make_read(130, 20, reverse=True, cigar=[(5, 3), (0, 15), (4, 7)])
    assert soft_clips(fwd) == (5, 0)
    assert soft_clips(rev) == (0, 7)
    assert soft_clip_pos(fwd) == 95
    assert soft_clip_pos(rev) == 152

    frag = _classifier().classify([fwd, rev])
    assert (frag.start, frag.end) == (99, 147)


def test_unmapped_and_orphan():
    clf = _classifier()
    up, down = _pair()
    down.flag |= 0x4
    assert clf.classify([up, down]) is None
    assert clf.stats.unmap_skip == 1
    assert clf.stats.unmap_orphan == 1


def test_multi_mapping_tag_and_extra_records():
    clf = _classifier()
    up, down = _pair()
    up.set_tag("XA", "chr1,+100,20M,0;")
    assert clf.classify([up, down]) is None
    assert clf.classify(_pair() + [make_read(500, 20)]) is None
    assert clf.stats.mm_reads == 2


def test_mitochondrial():
    clf = AlignmentClassifier(ClassifierConfig(), ReadNameSuffixExtractor(16), mito_tid=0)
    assert clf.classify(_pair()) is None
    assert clf.stats.mito_skip == 1


def test_low_mapq():
    clf = _classifier()
    assert clf.classify(_pair(mapq=10)) is None
    assert clf.stats.mapq_skip == 1


def test_single_mapped_record_is_unpaired():
    clf = _classifier()
    assert clf.classify([make_read(100, 20)]) is None
    assert clf.stats.unpaired_skip == 1


def test_chimeric_reasons():
    clf = _classifier()
    assert clf.classify(_pair(tid=1)) is None
    assert clf.classify([make_read(100, 20), make_read(130, 20)]) is None
    assert clf.classify([make_read(100, 20), make_read(1000, 20, reverse=True)]) is None
    # reverse mate ends 10bp after the forward start
    assert clf.classify([make_read(100, 20), make_read(90, 20, reverse=True)]) is None

    s = clf.stats
    assert (s.chimeric_tids, s.chimeric_strand, s.chimeric_max_distance, s.chimeric_min_distance) == (1, 1, 1, 1)
    assert s.num_chimeric == 4
    assert s.num_passed == 0


def test_first_failing_filter_wins():
    clf = _classifier()
    # low MAPQ and chimeric: only the earlier filter counts
    assert clf.classify(_pair(mapq=1, tid=1)) is None
    assert clf.stats.mapq_skip == 1
    assert clf.stats.num_chimeric == 0


def test_stats_only_counts_but_emits_nothing():
    clf = AlignmentClassifier(ClassifierConfig(), ReadNameSuffixExtractor(16), stats_only=True)
    assert clf.classify(_pair()) is None
    assert clf.stats.total_reads == 1
    assert clf.stats.num_passed == 1


def test_empty_group_raises():
    with pytest.raises(FatalInputError):
        _classifier().classify([])


def test_tag_extractor_and_missing_tag():
    clf = AlignmentClassifier(ClassifierConfig(), TagExtractor(16))
    up, down = _pair()
    assert clf.classify([up, down]) is None
    assert clf.stats.cb_skip == 1

    up, down = _pair()
    for aln in (up, down):
        aln.set_tag("CB", "TTTTTTTTTTTTTTTT-1")
    frag = clf.classify([up, down])
    assert frag.cb == cb_string_to_u64("T" * 16)


def test_short_read_name_raises():
    with pytest.raises(FatalInputError):
        ReadNameSuffixExtractor(16)(make_read(100, 20, name="short"))


def test_filter_bam_on_toy_data(tmp_path: Path):
    toy = make_toy_data(outdir=tmp_path / "toy")
    out = tmp_path / "toy.frag"
    stats = filter_bam(bam_path=toy["bam"], out_path=out, config=ClassifierConfig(), progress_bar=False)

    assert stats.total_reads == 45
    assert stats.unmap_skip == 2
    assert stats.unmap_orphan == 1
    assert stats.mito_skip == 1
    assert stats.mapq_skip == 1
    assert stats.chimeric_tids == 1
    assert stats.num_passed == 40
    assert stats.fragments_written == 40

    frags = list(iter_fragments(out, BarcodeFragment))
    assert len(frags) == 40
    barcodes = {cb_string_to_u64(cb) for cb in toy["barcodes"].split(",")}
    assert {f.cb for f in frags if f.chr == 0} > barcodes


def test_filter_bam_unknown_mito_name(tmp_path: Path):
    toy = make_toy_data(outdir=tmp_path / "toy")
    with pytest.raises(FatalConfigError):
        filter_bam(
            bam_path=toy["bam"],
            out_path=tmp_path / "x.frag",
            config=ClassifierConfig(mito_name="MT"),
            progress_bar=False,
        )


def test_toy_pair_helper_is_a_valid_fragment():
    frag = _classifier().classify(make_pair(f"p:{CB}", tid=0, start0=1000, length=180))
    assert (frag.start, frag.end) == (1004, 1175)


def _collapsing_pair() -> List[pysam.AlignedSegment]:
    # soft-clipped forward mate hangs off the contig start; both Tn5 shifts clamp to 0
    return [make_read(0, 5, cigar=[(4, 20), (0, 5)]), make_read(0, 5, reverse=True)]


def test_clamped_pair_counts_the_same_with_and_without_stats_only():
    normal = _classifier()
    stats_only = AlignmentClassifier(ClassifierConfig(), ReadNameSuffixExtractor(16), stats_only=True)
    assert normal.classify(_collapsing_pair()) is None
    assert stats_only.classify(_collapsing_pair()) is None

    assert normal.stats.chimeric_min_distance == 1
    assert normal.stats.to_dict() == stats_only.stats.to_dict()
    assert stats_only.stats.num_passed == 0


def test_emitted_fragments_have_start_before_end():
    clf = _classifier()
    groups = [_pair(), _collapsing_pair(), [make_read(3, 20), make_read(40, 20, reverse=True)]]
    frags = [f for f in (clf.classify(g) for g in groups) if f is not None]
    assert len(frags) == 2
    assert all(f.start < f.end for f in frags)


def test_negative_distances_and_offsets_rejected():
    with pytest.raises(FatalConfigError):
        ClassifierConfig(mate_min_distance=-50)
    with pytest.raises(FatalConfigError):
        ClassifierConfig(tn5_left_offset=-1)
    with pytest.raises(FatalConfigError):
        ClassifierConfig(tn5_right_offset=-1)


def _tagged(value: str) -> pysam.AlignedSegment:
    aln = make_read(100, 20)
    aln.set_tag("CB", value)
    return aln


def test_tag_extractor_strips_gem_suffix():
    extract = TagExtractor(4)
    assert extract(_tagged("ACGT-1")) == cb_string_to_u64("ACGT")
    assert extract(_tagged("ACGTAC-12")) == cb_string_to_u64("ACGT")


def test_tag_extractor_rejects_short_or_invalid_tags():
    with pytest.raises(FatalInputError, match="read1"):
        TagExtractor(16)(_tagged("ACGT-1"))
    with pytest.raises(FatalInputError, match="read1"):
        TagExtractor(4)(_tagged("ACXT"))


def test_filter_bam_refuses_to_overwrite_its_input(tmp_path: Path):
    toy = make_toy_data(outdir=tmp_path / "toy")
    with pytest.raises(FatalConfigError):
        filter_bam(bam_path=toy["bam"], out_path=toy["bam"], config=ClassifierConfig(), progress_bar=False)
    assert Path(toy["bam"]).stat().st_size > 0
