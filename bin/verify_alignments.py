#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "polars",
#     "pydantic",
#     "pysam",
# ]
# ///
"""
Normalize reference names in a SAM/BAM/CRAM file and count unique reads.

Two passes over the data:
  1. Stream the input, strip "chr" prefixes from the header, and write only the
     records that are mapped to a known reference.
  2. Sort that output by read name (samtools sort -n, disk-backed) and walk the
     sorted copy group by group, counting unique and multiply-mapped reads per
     mate slot.

The sorted copy lives in a hidden scratch directory next to the output file and
is removed before the run ends.
"""

from __future__ import annotations

import argparse
import gzip
import struct
import sys
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import IntFlag
from pathlib import Path
from typing import TYPE_CHECKING, NamedTuple, TextIO

import polars as pl
import pysam
from loguru import logger
from pydantic import Field, ValidationInfo, field_validator
from pydantic.dataclasses import dataclass as config_dataclass

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Sequence

# ------------------------------- CONSTANTS -------------------------------- #

CHR_PREFIX = "chr"
SN_CHR = "SN:chr"
BAM_MAGIC = b"BAM\x01"

# Emit a progress debug line after this many input records
DEBUG_EVERY: int = 100_000

# samtools sort default (-m 768M)
DEFAULT_SORT_MEMORY: int = 768 * 1024 * 1024

MEMORY_SUFFIXES = {"K": 1024, "M": 1024**2, "G": 1024**3}

REPORT_LABELS = (
    ("mapped_reads", "Mapped reads"),
    ("total_reads", "Total reads"),
    ("unique_mapped_reads", "Unique mapped reads"),
    ("unique_multi_mapped_reads", "Unique multiply-mapped reads"),
    ("unique_total_reads", "Unique total reads"),
)


# -------------------------------- ERRORS ----------------------------------- #


class VerifyError(Exception):
    """Base class for fatal errors; main() turns these into exit status 1."""


class UsageError(VerifyError):
    """Bad command line: missing arguments, identical input/output, bad values."""


class AlignmentOpenError(VerifyError):
    """An alignment file could not be opened in the requested mode."""


class AlignmentReadError(VerifyError):
    """Records could not be read from an opened alignment file."""


class HeaderSynthesisError(VerifyError):
    """Header text could not be built from the reference set."""


class SortError(VerifyError):
    """The external sort did not produce a readable output."""


class GroupingError(VerifyError):
    """A read name reappeared after its group had been closed."""


# ------------------------------- DATA TYPES -------------------------------- #


class DebugFlags(IntFlag):
    """Diagnostic bits enabled by repeated -v."""

    HEADER = 1  # rename trace and header dump
    DUPLICATES = 2  # duplicate-detection trace

    @classmethod
    def from_verbosity(cls, verbose: int) -> DebugFlags:
        """Each -v shifts the level left and sets the low bit: 0, 1, 3, 7, ..."""
        level = 0
        for _ in range(max(0, verbose)):
            level = (level << 1) | 1
        return cls(level & (cls.HEADER | cls.DUPLICATES))


class Reference(NamedTuple):
    """One @SQ entry: reference name and declared length."""

    name: str
    length: int


@dataclass(frozen=True)
class HeaderState:
    """
    The parts of an alignment header this tool rewrites.

    `text_length` is always len(text), 0 when there is no text.
    """

    references: tuple[Reference, ...] = ()
    text: str | None = None
    text_length: int = 0

    @classmethod
    def from_pysam(cls, header: pysam.AlignmentHeader) -> HeaderState:
        refs = tuple(
            Reference(name, length)
            for name, length in zip(header.references, header.lengths)
        )
        # htslib pads regenerated text with blank lines; those are not header records
        lines = [line for line in str(header).splitlines(keepends=True) if line.strip()]
        text = "".join(lines) or None
        return cls(references=refs, text=text, text_length=len(text) if text else 0)

    @classmethod
    def from_fasta(cls, reference: str) -> HeaderState:
        """References (no text) taken from a FASTA file, indexing it if needed."""
        try:
            with pysam.FastaFile(reference) as fasta:
                refs = tuple(
                    Reference(name, length)
                    for name, length in zip(fasta.references, fasta.lengths)
                )
        except (OSError, ValueError) as e:
            msg = f"Failed to open reference FASTA {reference}: {e}"
            raise AlignmentOpenError(msg) from e
        return cls(references=refs)

    def to_pysam(self) -> pysam.AlignmentHeader:
        """Build a pysam header carrying both the reference arrays and the text."""
        return pysam.AlignmentHeader.from_references(
            reference_names=[ref.name for ref in self.references],
            reference_lengths=[ref.length for ref in self.references],
            text=self.text,
            add_sq_text=False,
        )


@dataclass
class ReadCounts:
    """Running counters. Each pass owns its own instance."""

    total_reads: int = 0
    mapped_reads: int = 0
    unique_mapped_reads: int = 0
    unique_total_reads: int = 0
    unique_multi_mapped_reads: int = 0
    anomalous_reads: int = 0  # mapped, but reference id unknown
    unmapped_reads: int = 0

    def merge(self, other: ReadCounts) -> ReadCounts:
        """Return a new ReadCounts holding the field-wise sum of both."""
        return ReadCounts(
            total_reads=self.total_reads + other.total_reads,
            mapped_reads=self.mapped_reads + other.mapped_reads,
            unique_mapped_reads=self.unique_mapped_reads + other.unique_mapped_reads,
            unique_total_reads=self.unique_total_reads + other.unique_total_reads,
            unique_multi_mapped_reads=(
                self.unique_multi_mapped_reads + other.unique_multi_mapped_reads
            ),
            anomalous_reads=self.anomalous_reads + other.anomalous_reads,
            unmapped_reads=self.unmapped_reads + other.unmapped_reads,
        )


@dataclass
class MateGroupState:
    """Scratch state for the read-name group currently being walked."""

    identifier: str | None = None
    seen_slot: list[bool] = field(default_factory=lambda: [False, False])
    seen_multi_mapped: list[bool] = field(default_factory=lambda: [False, False])

    def reset(self, identifier: str) -> None:
        self.identifier = identifier
        self.seen_slot = [False, False]
        self.seen_multi_mapped = [False, False]


def parse_memory(value: str | int) -> int:
    """
    Parse a samtools-style memory size ("805306368", "768M", "2G") into bytes.
    """
    if isinstance(value, int):
        size = value
    else:
        text = value.strip().upper()
        multiplier = 1
        if text and text[-1] in MEMORY_SUFFIXES:
            multiplier = MEMORY_SUFFIXES[text[-1]]
            text = text[:-1]
        if not text.isdigit():
            msg = f"Invalid memory size: {value!r} (expected an integer with optional K/M/G suffix)"
            raise UsageError(msg)
        size = int(text) * multiplier
    if size <= 0:
        msg = f"Memory size must be positive, got {value!r}"
        raise UsageError(msg)
    return size


@config_dataclass(frozen=True)
class RunConfig:
    """Everything a run needs, validated once and passed to every stage."""

    in_path: str = Field(min_length=1)
    out_path: str = Field(min_length=1)
    reference: str | None = None
    sort_memory: int = Field(default=DEFAULT_SORT_MEMORY, gt=0)
    sort_threads: int = Field(default=1, ge=1)
    keep_lengths: bool = False
    check_grouping: bool = True
    debug_level: int = Field(default=0, ge=0)
    stats_path: str | None = None

    @field_validator("out_path")
    @classmethod
    def differs_from_input(cls, v: str, info: ValidationInfo) -> str:
        if info.data and "in_path" in info.data:
            if Path(v).resolve() == Path(info.data["in_path"]).resolve():
                msg = "Can't read and write the same file"
                raise ValueError(msg)
        return v

    @property
    def debug(self) -> DebugFlags:
        return DebugFlags(self.debug_level)


# ----------------------------- LOGGING SETUP ------------------------------- #


def configure_logging(verbose: int, quiet: int) -> None:
    """
    Base at SUCCESS (0). Positive → louder (more verbose), negative → quieter.
    Map:
      +3.. = TRACE
      +2   = DEBUG
      +1   = INFO
       0   = SUCCESS
      -1   = WARNING
      -2   = ERROR
      <=-3 = CRITICAL
    """
    logger.remove()
    delta = verbose - quiet
    match delta:
        case d if d >= 3:  # noqa: PLR2004
            level_str = "TRACE"
        case 2:
            level_str = "DEBUG"
        case 1:
            level_str = "INFO"
        case 0:
            level_str = "SUCCESS"
        case -1:
            level_str = "WARNING"
        case -2:
            level_str = "ERROR"
        case d if d <= -3:  # noqa: PLR2004
            level_str = "CRITICAL"
    logger.add(sys.stderr, level=level_str)
    logger.debug(f"Logger configured at level: {level_str}")


# -------------------------- HEADER NORMALIZATION --------------------------- #


def strip_chr_prefix(
    ref: Reference,
    keep_lengths: bool = False,  # noqa: FBT001, FBT002
    debug: DebugFlags = DebugFlags(0),
) -> Reference:
    """
    Drop a leading "chr" from a reference name.

    Only names longer than the prefix with a declared length above 3 are renamed.
    The new length is the character count of the new name unless `keep_lengths`
    is set. That mirrors what older versions of this tool wrote and is almost
    certainly not a real sequence length; `--keep-lengths` keeps the declared one.
    """
    if not ref.name.startswith(CHR_PREFIX):
        return ref
    if len(ref.name) <= len(CHR_PREFIX) or ref.length <= 3:  # noqa: PLR2004
        return ref

    new_name = ref.name[len(CHR_PREFIX) :]
    new_length = ref.length if keep_lengths else len(new_name)
    if debug & DebugFlags.HEADER:
        logger.info(f"Removing '{CHR_PREFIX}' prefix. {ref.name} becomes {new_name}")
    return Reference(new_name, new_length)


def rewrite_header_text(text: str) -> str:
    """Delete "chr" after every "SN:" until no "SN:chr" is left."""
    while SN_CHR in text:
        text = text.replace(SN_CHR, "SN:")
    return text


def synthesize_header_text(references: Sequence[Reference]) -> str:
    """One @SQ line per reference, in reference-id order."""
    try:
        return "".join(f"@SQ\tSN:{ref.name}\tLN:{ref.length}\n" for ref in references)
    except (MemoryError, TypeError, ValueError) as e:
        msg = f"Failed to build header text from {len(references)} references: {e}"
        raise HeaderSynthesisError(msg) from e


def normalize_header(
    header: HeaderState,
    keep_lengths: bool = False,  # noqa: FBT001, FBT002
    debug: DebugFlags = DebugFlags(0),
) -> HeaderState:
    """
    Return a new header with "chr" prefixes removed from reference names and
    @SQ SN fields. Missing text is regenerated from the rewritten references.
    """
    refs = tuple(strip_chr_prefix(ref, keep_lengths, debug) for ref in header.references)

    # Positive invariant: renaming preserves reference order and count
    assert len(refs) == len(header.references), (
        f"Reference count changed during rename: {len(header.references)} -> {len(refs)}"
    )

    text = rewrite_header_text(header.text) if header.text else None
    if not text and refs:
        logger.debug(f"Header text is empty; synthesizing @SQ lines for {len(refs)} references")
        text = synthesize_header_text(refs)

    return HeaderState(references=refs, text=text, text_length=len(text) if text else 0)


# ---------------------------- CLASSIFICATION ------------------------------- #


class ReadClassifier:
    """
    Decide which input records survive into the output.

    Only records mapped to a known reference are kept. A mapped record pointing
    at no reference is dropped and warned about once per run.
    """

    def __init__(self, reference_count: int) -> None:
        assert reference_count >= 0, f"Reference count cannot be negative: {reference_count}"
        self.reference_count = reference_count
        self.seen_anomalous = False

    def reset(self) -> None:
        self.seen_anomalous = False

    def classify(self, aln: pysam.AlignedSegment, counts: ReadCounts) -> bool:
        counts.total_reads += 1

        if aln.is_unmapped:
            counts.unmapped_reads += 1
            return False
        counts.mapped_reads += 1

        if 0 <= aln.reference_id < self.reference_count:
            return True

        counts.anomalous_reads += 1
        if not self.seen_anomalous:
            self.seen_anomalous = True
            logger.warning(
                f"Read '{aln.query_name}' is marked as mapped but has no valid reference "
                f"(reference_id={aln.reference_id}); dropping it and any like it.",
            )
        return False


def batched(
    iterable: Iterable[pysam.AlignedSegment],
    batch_size: int,
) -> Iterator[list[pysam.AlignedSegment]]:
    """
    Yield lists of reads up to batch_size. Keeps memory bounded and provides
    a simple place to insert batch-wise operations if ever needed.
    """
    batch: list[pysam.AlignedSegment] = []
    for item in iterable:
        batch.append(item)
        if len(batch) >= batch_size:
            yield batch
            batch.clear()
    if batch:
        yield batch
        batch.clear()


def classify_stream(
    inp: Iterable[pysam.AlignedSegment],
    outp: pysam.AlignmentFile,
    classifier: ReadClassifier,
    counts: ReadCounts,
    batch_size: int = 10000,
) -> int:
    """
    Stream input -> output, writing only the records the classifier keeps.

    Returns the number of records written.
    """
    assert batch_size > 0, f"Batch size must be positive, got {batch_size}"

    kept = 0
    mapped_before = counts.mapped_reads
    anomalous_before = counts.anomalous_reads
    for batch in batched(inp, batch_size):
        for aln in batch:
            if classifier.classify(aln, counts):
                outp.write(aln)
                kept += 1
            if counts.total_reads % DEBUG_EVERY == 0:
                logger.debug(
                    f"Progress: total={counts.total_reads}, mapped={counts.mapped_reads}, kept={kept}",
                )

    # Final invariants: kept + dropped must account for every record
    assert counts.mapped_reads <= counts.total_reads, (
        f"Mapped count exceeds total: mapped={counts.mapped_reads}, total={counts.total_reads}"
    )
    mapped_here = counts.mapped_reads - mapped_before
    anomalous_here = counts.anomalous_reads - anomalous_before
    assert kept == mapped_here - anomalous_here, (
        f"Kept count inconsistency: kept={kept}, mapped={mapped_here}, "
        f"anomalous={anomalous_here}"
    )

    logger.info(
        f"Classification totals: total={counts.total_reads}, mapped={counts.mapped_reads}, "
        f"kept={kept}, dropped_unmapped={counts.unmapped_reads}, "
        f"dropped_unknown_reference={counts.anomalous_reads}",
    )
    return kept


# ------------------------------ EXTERNAL SORT ------------------------------ #


@contextmanager
def sorted_scratch(output_path: str | Path) -> Iterator[Path]:
    """
    Hidden scratch directory next to the output file for the name-sorted copy
    and the sort's spill files. Removed on exit, success or not.
    """
    output_path = Path(output_path)
    with tempfile.TemporaryDirectory(
        dir=output_path.parent,
        prefix=f".{output_path.name}.byname-",
    ) as tmp:
        logger.debug(f"Created sort scratch directory: {tmp}")
        yield Path(tmp)
    logger.debug(f"Removed sort scratch directory: {tmp}")


def sorted_path_for(scratch: Path, output_path: str | Path) -> Path:
    """Deterministic name of the name-sorted copy inside `scratch`."""
    return scratch / f"{Path(output_path).stem}.byname.bam"


def sort_by_identifier(in_path: str | Path, scratch: Path, config: RunConfig) -> Path:
    """
    Sort `in_path` by read name with samtools, spilling to `scratch` when the
    data exceeds `config.sort_memory` bytes per thread.
    """
    sorted_path = sorted_path_for(scratch, config.out_path)
    spill_prefix = scratch / f"{Path(config.out_path).stem}.spill"
    args = [
        "-n",
        "-m",
        str(config.sort_memory),
        "-@",
        str(max(0, config.sort_threads - 1)),
        "-T",
        str(spill_prefix),
        "-O",
        "BAM",
        "-o",
        str(sorted_path),
    ]
    if config.reference is not None:
        args.extend(["--reference", config.reference])
    args.append(str(in_path))

    logger.info(f"Sorting {in_path} by read name (memory per thread={config.sort_memory} bytes)")
    logger.debug(f"samtools sort {' '.join(args)}")
    try:
        pysam.sort(*args)
    except pysam.utils.SamtoolsError as e:
        msg = f"samtools sort failed for {in_path}: {e}"
        raise SortError(msg) from e

    if not sorted_path.is_file():
        msg = f"samtools sort did not produce {sorted_path}"
        raise SortError(msg)
    return sorted_path


# -------------------------------- GROUPING --------------------------------- #


def mate_slot(aln: pysam.AlignedSegment) -> int:
    """0 for the first mate or an unpaired read, 1 for the second mate."""
    return 1 if aln.is_read2 else 0


class DuplicateGrouper:
    """
    Count unique and multiply-mapped reads from a name-sorted stream.

    A read contributes at most one unique count per mate slot. Any further
    record with the same (name, slot) is a multiple alignment and is counted
    once into the multiply-mapped bucket.
    """

    def __init__(
        self,
        debug: DebugFlags = DebugFlags(0),
        check_grouping: bool = True,  # noqa: FBT001, FBT002
    ) -> None:
        self.state = MateGroupState()
        self.debug = debug
        self.check_grouping = check_grouping
        self._closed: set[str] = set()

    def consume(self, aln: pysam.AlignedSegment, counts: ReadCounts) -> None:
        slot = mate_slot(aln)
        name = aln.query_name
        mapped = not aln.is_unmapped
        state = self.state

        if state.identifier is not None and name == state.identifier:
            if state.seen_slot[slot]:
                if self.debug & DebugFlags.DUPLICATES:
                    logger.debug(f"Duplicate alignment for '{name}' mate slot {slot}")
                if not state.seen_multi_mapped[slot]:
                    if mapped:
                        counts.unique_multi_mapped_reads += 1
                    state.seen_multi_mapped[slot] = True
                return
            if mapped:
                counts.unique_mapped_reads += 1
            counts.unique_total_reads += 1
            state.seen_slot[slot] = True
            return

        if self.check_grouping:
            if name in self._closed:
                msg = (
                    f"Read '{name}' reappeared after its group was closed; "
                    "the name-sorted input is not grouped by read name"
                )
                raise GroupingError(msg)
            if state.identifier is not None:
                self._closed.add(state.identifier)

        state.reset(name)
        if mapped:
            counts.unique_mapped_reads += 1
        counts.unique_total_reads += 1
        state.seen_slot[slot] = True


def group_stream(
    records: Iterable[pysam.AlignedSegment],
    debug: DebugFlags = DebugFlags(0),
    check_grouping: bool = True,  # noqa: FBT001, FBT002
) -> ReadCounts:
    """Walk a name-sorted stream once and return the unique/multi-mapped counts."""
    counts = ReadCounts()
    grouper = DuplicateGrouper(debug=debug, check_grouping=check_grouping)
    seen = 0
    for aln in records:
        grouper.consume(aln, counts)
        seen += 1
        if seen % DEBUG_EVERY == 0:
            logger.debug(f"Grouping progress: records={seen}, unique={counts.unique_total_reads}")

    assert counts.unique_mapped_reads <= counts.unique_total_reads, (
        f"Unique mapped exceeds unique total: {counts.unique_mapped_reads} > {counts.unique_total_reads}"
    )
    logger.info(
        f"Grouping totals: records={seen}, unique_total={counts.unique_total_reads}, "
        f"unique_mapped={counts.unique_mapped_reads}, "
        f"unique_multi_mapped={counts.unique_multi_mapped_reads}",
    )
    return counts


# -------------------------------- REPORTING -------------------------------- #


def format_report(counts: ReadCounts) -> list[str]:
    return [f"{label}: {getattr(counts, attr)}" for attr, label in REPORT_LABELS]


def emit_report(counts: ReadCounts, stream: TextIO | None = None) -> None:
    stream = sys.stdout if stream is None else stream
    for line in format_report(counts):
        print(line, file=stream)


def write_stats_table(counts: ReadCounts, output_path: str | Path) -> None:
    """Save the final counts as a one-row TSV using polars."""
    columns = [attr for attr, _ in REPORT_LABELS] + ["anomalous_reads", "unmapped_reads"]
    stats = pl.DataFrame([{col: getattr(counts, col) for col in columns}])
    stats.write_csv(output_path, separator="\t")
    logger.info(f"Saved read counts to {output_path}")


# ----------------------------- I/O UTILITIES ------------------------------- #


def _io_mode_from_ext(path: str, write: bool) -> str:  # noqa: FBT001
    """Determine pysam open mode from filename extension."""
    lower = path.lower()
    if lower.endswith(".sam"):
        return "w" if write else "r"
    if lower.endswith(".bam"):
        return "wb" if write else "rb"
    if lower.endswith(".cram"):
        return "wc" if write else "rc"
    msg = f"Output/input must end with .sam, .bam, or .cram: {path}"
    raise AlignmentOpenError(msg)


def _ensure_fasta_index(reference: str) -> None:
    """Build the .fai for `reference` if it is missing."""
    if Path(f"{reference}.fai").is_file():
        return
    logger.debug(f"Indexing reference FASTA: {reference}")
    HeaderState.from_fasta(reference)


def is_empty_file(path: str) -> bool:
    """True for an existing file with no bytes at all."""
    p = Path(path)
    return p.is_file() and p.stat().st_size == 0


def bam_header_text_length(path: str) -> int | None:
    """
    The l_text field stored in a BAM header, or None for SAM/CRAM or a file
    that does not start with a BAM header. pysam only exposes text that htslib
    may have regenerated from the reference list.
    """
    if not path.lower().endswith(".bam"):
        return None
    try:
        with gzip.open(path, "rb") as fh:
            head = fh.read(8)
    except OSError:
        return None
    if len(head) < 8 or head[:4] != BAM_MAGIC:  # noqa: PLR2004
        return None
    return struct.unpack("<i", head[4:8])[0]


def header_text_is_absent(path: str) -> bool:
    """True when a BAM stores no header text or a SAM has no @ lines."""
    lower = path.lower()
    if lower.endswith(".bam"):
        return bam_header_text_length(path) == 0
    if lower.endswith(".sam"):
        with open(path) as fh:
            for line in fh:
                if line.strip():
                    return not line.startswith("@")
        return True
    return False


def iter_sam_records(
    path: str,
    header: pysam.AlignmentHeader,
) -> Iterator[pysam.AlignedSegment]:
    """Parse SAM text records against `header`, skipping any @ lines."""
    with open(path) as fh:
        for lineno, line in enumerate(fh, start=1):
            line = line.rstrip("\r\n")
            if not line or line.startswith("@"):
                continue
            try:
                yield pysam.AlignedSegment.fromstring(line, header)
            except ValueError as e:
                msg = f"Failed to parse {path} line {lineno}: {e}"
                raise AlignmentReadError(msg) from e


def open_alignment(
    path: str,
    write: bool,  # noqa: FBT001
    header: pysam.AlignmentHeader | None = None,
    reference: str | None = None,
) -> pysam.AlignmentFile:
    """
    Open SAM/BAM/CRAM with the mode implied by the extension.
    - Reading: a reference FASTA, if given, resolves reference names and lengths
      for header-less SAM and decodes CRAM.
    - Writing: `header` is required.
    """
    assert isinstance(path, str) and len(path) > 0, (  # noqa: PT018
        f"Path must be non-empty string, got: {path!r}"
    )

    mode = _io_mode_from_ext(path, write)

    kwargs = {}
    lower = path.lower()
    wants_reference = lower.endswith(".cram") or (not write and lower.endswith(".sam"))
    if reference is not None and wants_reference:
        _ensure_fasta_index(reference)
        kwargs["reference_filename"] = reference
    elif reference is None and lower.endswith(".cram"):
        logger.warning(
            f"Opening CRAM without explicit reference: {path}. "
            "Decoding may fail unless the reference is resolvable.",
        )

    action = "write" if write else "read"
    logger.debug(f"Opening for {action}: {path} (mode={mode})")
    try:
        if write:
            assert header is not None, f"Writing to '{path}' requires a header but got None"
            return pysam.AlignmentFile(path, mode, header=header, **kwargs)
        return pysam.AlignmentFile(path, mode, check_sq=False, **kwargs)
    except (OSError, ValueError) as e:
        msg = f"Failed to open {action} file {path}: {e}"
        raise AlignmentOpenError(msg) from e


# ------------------------------- PIPELINE ---------------------------------- #


def filter_to_output(config: RunConfig) -> ReadCounts:
    """Header rewrite and classification pass: input -> output."""
    counts = ReadCounts()
    input_alignment = open_alignment(config.in_path, write=False, reference=config.reference)
    try:
        in_header = HeaderState.from_pysam(input_alignment.header)
        records: Iterable[pysam.AlignedSegment] = input_alignment

        if (
            not in_header.references
            and config.reference is not None
            and config.in_path.lower().endswith(".sam")
        ):
            # Header-less SAM: take @SQ entries from the FASTA and parse records against them
            in_header = HeaderState.from_fasta(config.reference)
            logger.info(
                f"Resolved {len(in_header.references)} references from {config.reference}",
            )
            records = iter_sam_records(
                config.in_path,
                pysam.AlignmentHeader.from_references(
                    reference_names=[ref.name for ref in in_header.references],
                    reference_lengths=[ref.length for ref in in_header.references],
                ),
            )
        elif header_text_is_absent(config.in_path):
            in_header = HeaderState(references=in_header.references)

        header = normalize_header(
            in_header,
            keep_lengths=config.keep_lengths,
            debug=config.debug,
        )
        if config.debug & DebugFlags.HEADER:
            logger.info(f"New header:\n{header.text or ''}")

        output_alignment = open_alignment(
            config.out_path,
            write=True,
            header=header.to_pysam(),
            reference=config.reference,
        )
        try:
            classifier = ReadClassifier(len(header.references))
            classify_stream(records, output_alignment, classifier, counts)
        except (NotImplementedError, OSError, ValueError) as e:
            msg = f"Failed to read records from {config.in_path}: {e}"
            raise AlignmentReadError(msg) from e
        finally:
            output_alignment.close()
    finally:
        input_alignment.close()
    return counts


def write_empty_output(config: RunConfig) -> None:
    """Create the output with an empty header for a 0-byte input."""
    output_alignment = open_alignment(
        config.out_path,
        write=True,
        header=HeaderState().to_pysam(),
        reference=config.reference,
    )
    output_alignment.close()


def count_unique_reads(config: RunConfig) -> ReadCounts:
    """Sort the output by name in a scratch directory and group it."""
    with sorted_scratch(config.out_path) as scratch:
        sorted_path = sort_by_identifier(config.out_path, scratch, config)
        try:
            sorted_alignment = open_alignment(str(sorted_path), write=False)
        except AlignmentOpenError as e:
            msg = f"Failed to re-open name-sorted file {sorted_path}: {e}"
            raise SortError(msg) from e
        try:
            return group_stream(
                sorted_alignment,
                debug=config.debug,
                check_grouping=config.check_grouping,
            )
        finally:
            sorted_alignment.close()


def run(config: RunConfig) -> ReadCounts:
    """Run every stage in order and return the merged counts."""
    logger.debug(f"RunConfig: {config}")
    if is_empty_file(config.in_path):
        logger.warning(f"Input {config.in_path} is empty; nothing to count")
        write_empty_output(config)
        return ReadCounts()

    filter_counts = filter_to_output(config)
    group_counts = count_unique_reads(config)
    return filter_counts.merge(group_counts)


# --------------------------------- CLI ------------------------------------- #


class _ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that exits with status 1 on usage errors."""

    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        logger.error(message)
        sys.exit(1)


def build_parser() -> argparse.ArgumentParser:
    """
    CLI:
      -v / -vv / -vvv : increase verbosity and enable header/duplicate tracing
      -q / -qq / -qqq : decrease verbosity
    (Mutually exclusive.)
    """
    p = _ArgumentParser(
        description=(
            "Strip 'chr' prefixes from reference names, keep only reads mapped to a\n"
            "known reference, and count unique and multiply-mapped reads after\n"
            "sorting the output by read name."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    # I/O
    p.add_argument("in_path", help="Input SAM/BAM/CRAM")
    p.add_argument("out_path", help="Output SAM/BAM/CRAM (filtered, header rewritten)")
    p.add_argument(
        "reference",
        nargs="?",
        default=None,
        help="Reference FASTA used to resolve reference lengths for SAM (or decode CRAM)",
    )
    p.add_argument(
        "--stats",
        dest="stats_path",
        default=None,
        help="Also write the final counts as a one-row TSV",
    )

    # Sorting
    sort_group = p.add_argument_group("Sort Configuration")
    sort_group.add_argument(
        "--sort-memory",
        default="768M",
        help="Memory per sort thread before spilling to disk (bytes, or K/M/G suffix)",
    )
    sort_group.add_argument(
        "--sort-threads",
        type=int,
        default=1,
        help="Threads for the name sort",
    )

    # Behavior
    p.add_argument(
        "--keep-lengths",
        action="store_true",
        help="Keep declared reference lengths when stripping 'chr' (default: length of the new name)",
    )
    p.add_argument(
        "--no-grouping-check",
        dest="check_grouping",
        action="store_false",
        help="Skip detection of read names that are not contiguous after sorting (saves memory)",
    )

    # Verbosity: -v/-vv/-vvv or -q/-qq/-qqq (mutually exclusive)
    g = p.add_mutually_exclusive_group()
    g.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (use up to -vvv).",
    )
    g.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Decrease verbosity (use up to -qqq).",
    )

    return p


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose, args.quiet)

    try:
        config = RunConfig(
            in_path=args.in_path,
            out_path=args.out_path,
            reference=args.reference,
            sort_memory=parse_memory(args.sort_memory),
            sort_threads=args.sort_threads,
            keep_lengths=bool(args.keep_lengths),
            check_grouping=bool(args.check_grouping),
            debug_level=int(DebugFlags.from_verbosity(args.verbose)),
            stats_path=args.stats_path,
        )
    except (UsageError, ValueError) as e:
        parser.print_usage(sys.stderr)
        logger.error(f"Invalid arguments: {e}")
        sys.exit(1)

    logger.info("Starting verification run.")
    try:
        counts = run(config)
        if config.stats_path is not None:
            write_stats_table(counts, config.stats_path)
    except VerifyError as e:
        logger.error(str(e))
        sys.exit(1)
    except OSError as e:
        logger.error(f"I/O error: {e}")
        sys.exit(1)

    emit_report(counts)
    logger.success(
        f"Mapped: {counts.mapped_reads}/{counts.total_reads} | "
        f"Unique: {counts.unique_total_reads} | "
        f"Multiply-mapped: {counts.unique_multi_mapped_reads}",
    )
    logger.info("Verification run complete.")


if __name__ == "__main__":
    main()
