# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "pysam",
#     "pytest",
# ]
# ///
"""
Pytest fixtures and configuration for verify_alignments testing.

This module provides shared fixtures for building small SAM/BAM files with pysam,
lightweight mock records, and loguru capture.
"""

import gzip
import struct
import sys
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pysam
import pytest

# Add bin directory to Python path so we can import the module under test
BIN_DIR = Path(__file__).parent.parent / "bin"
sys.path.insert(0, str(BIN_DIR))

# SAM flag bits used to build records
PAIRED = 0x1
UNMAPPED = 0x4
READ1 = 0x40
READ2 = 0x80
SECONDARY = 0x100

REFERENCES = [("chr1", 1000), ("chr2", 800), ("MT", 100)]


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


class MockAlignedSegment:
    """Mock AlignedSegment carrying only the fields the counting passes read."""

    def __init__(
        self,
        query_name: str = "test_read",
        reference_id: int = 0,
        is_unmapped: bool = False,
        is_read2: bool = False,
    ) -> None:
        self.query_name = query_name
        self.reference_id = reference_id
        self.is_unmapped = is_unmapped
        self.is_read2 = is_read2


class RecordingWriter:
    """Stand-in for an output AlignmentFile that keeps written records."""

    def __init__(self) -> None:
        self.written: list[Any] = []

    def write(self, aln: Any) -> None:
        self.written.append(aln)


def create_sam_header(references: list[tuple[str, int]] = REFERENCES) -> dict[str, Any]:
    """Create a minimal SAM header with the given references."""
    return {
        "HD": {"VN": "1.6"},
        "SQ": [{"SN": name, "LN": length} for name, length in references],
    }


def make_read(
    qname: str,
    flag: int,
    reference_id: int = 0,
    reference_start: int = 10,
    seq: str = "ATCGATCGATCG",
) -> pysam.AlignedSegment:
    """Build one record; unmapped records get no position or CIGAR."""
    read = pysam.AlignedSegment()
    read.query_name = qname
    read.query_sequence = seq
    read.query_qualities = pysam.qualitystring_to_array("I" * len(seq))
    read.flag = flag
    if flag & UNMAPPED:
        read.reference_id = -1
        read.reference_start = -1
        read.mapping_quality = 0
    else:
        read.reference_id = reference_id
        read.reference_start = reference_start
        read.cigartuples = [(0, len(seq))]
        read.mapping_quality = 60
    return read


# (qname, flag, reference_id, reference_start)
SAMPLE_READS = [
    # readA: a clean pair
    ("readA", PAIRED | READ1, 0, 10),
    ("readA", PAIRED | READ2, 0, 100),
    # readB: first mate has a secondary alignment
    ("readB", PAIRED | READ1, 0, 20),
    ("readB", PAIRED | READ1 | SECONDARY, 1, 30),
    ("readB", PAIRED | READ2, 1, 50),
    # readC: single-end read on a reference without a chr prefix
    ("readC", 0, 2, 5),
    # readD: unmapped
    ("readD", UNMAPPED, -1, -1),
    # readE: single-end read with two extra alignments
    ("readE", 0, 0, 200),
    ("readE", SECONDARY, 0, 300),
    ("readE", SECONDARY, 1, 400),
]

# Expected report for SAMPLE_READS
SAMPLE_REPORT = [
    "Mapped reads: 9",
    "Total reads: 10",
    "Unique mapped reads: 6",
    "Unique multiply-mapped reads: 2",
    "Unique total reads: 6",
]


def write_alignment_file(
    path: Path,
    reads: list[tuple[str, int, int, int]],
    mode: str,
    references: list[tuple[str, int]] = REFERENCES,
) -> Path:
    """Write `reads` to `path` with pysam in the given mode ("w" or "wb")."""
    header = create_sam_header(references)
    with pysam.AlignmentFile(str(path), mode, header=header) as out:
        for qname, flag, ref_id, ref_start in reads:
            out.write(make_read(qname, flag, ref_id, ref_start))
    return path


def write_textless_bam(path: Path, references: list[tuple[str, int]]) -> Path:
    """Write a record-free BAM whose header has references but l_text == 0."""
    block = b"BAM\x01" + struct.pack("<i", 0) + struct.pack("<i", len(references))
    for name, length in references:
        encoded = name.encode() + b"\x00"
        block += struct.pack("<i", len(encoded)) + encoded + struct.pack("<i", length)
    with pysam.BGZFile(str(path), "wb") as fh:
        fh.write(block)
    return path


def read_bam_header_text(path: Path) -> str:
    """Raw header text stored in a BAM file."""
    with gzip.open(path, "rb") as fh:
        head = fh.read(8)
        assert head[:4] == b"BAM\x01"
        (l_text,) = struct.unpack("<i", head[4:8])
        return fh.read(l_text).decode().rstrip("\x00")


def write_fasta(path: Path, references: list[tuple[str, int]]) -> Path:
    """Write a FASTA with one sequence of the given length per reference."""
    with open(path, "w") as f:
        for name, length in references:
            f.write(f">{name}\n")
            f.write(f"{'A' * length}\n")
    return path


@pytest.fixture
def sample_bam_file(temp_dir: Path) -> Path:
    """A name-unsorted BAM with pairs, secondaries, and one unmapped read."""
    return write_alignment_file(temp_dir / "sample.bam", SAMPLE_READS, "wb")


@pytest.fixture
def sample_sam_file(temp_dir: Path) -> Path:
    """The same records as sample_bam_file, as text."""
    return write_alignment_file(temp_dir / "sample.sam", SAMPLE_READS, "w")


@pytest.fixture
def empty_sam_file(temp_dir: Path) -> Path:
    """Create an empty SAM file with header only."""
    return write_alignment_file(temp_dir / "empty.sam", [], "w")


@pytest.fixture
def log_messages() -> Iterator[list[str]]:
    """Collect loguru messages at DEBUG and above."""
    from loguru import logger

    messages: list[str] = []
    handler_id = logger.add(messages.append, level="DEBUG", format="{level}|{message}")
    yield messages
    logger.remove(handler_id)


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    # Remove existing handlers and set to WARNING level for tests
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="WARNING")
