# crossref-datafile

Command-line tools for working with the Crossref public data file: a directory
tree of gzip-compressed JSON Lines files (`*.jsonl.gz`), one metadata record
per line. Input files are found recursively below the given directory.

Three commands are installed:

- `crossref-indexer` scans every record and writes CSV indexes linking member
  IDs, DOI prefixes and DOIs to the input file they came from.
- `crossref-organizer` rewrites the records into a tree grouped by member ID
  and DOI prefix, optionally keeping only selected members and prefixes.
- `crossref-sampler` draws a random sample of lines across all input files,
  spread out in proportion to each file's line count.

Each command accepts `--help` and `--version`.

## Installation

```
pip install .
```

Tests need the `test` extra:

```
pip install ".[test]"
pytest
```

## Common options

- `-l`, `--log-level`: TRACE, DEBUG, INFO, WARN (or WARNING), ERROR. Unknown
  names fall back to INFO with a message on standard error. Default INFO.
- `-t`, `--threads`: number of worker threads; 0 (the default) uses the CPU
  count.

Progress bars are shown on standard error; log lines carry a timestamp.

## Indexing

```
crossref-indexer --input-dir /data/crossref --output-dir /data/index
```

Writes three files to the output directory (created if needed):

| File               | Columns                                     |
|--------------------|---------------------------------------------|
| `member_index.csv` | `member_id, input_file`                     |
| `prefix_index.csv` | `member_id, prefix, input_file`             |
| `doi_index.csv`    | `doi, member_id, prefix, input_file`        |

Each row is unique within its input file; row order is not defined. The
member may be a JSON string or number. When a record has no `prefix` field,
the part of the DOI before the first `/` is used, and `_unknown_` when neither
gives one. Records that lack a member or a DOI are counted and left out, as are
blank lines; lines that are not valid JSON are counted as parse errors.

While files are processed, per-file `*.member.part`, `*.prefix.part` and
`*.doi.part` files are written to the output directory; they are joined into
the final CSV files and then deleted.

Options: `-i/--input-dir`, `-o/--output-dir` (both required), `--log-level`,
`--threads`, `-s/--stats-interval` (seconds between progress statistics in the
log, default 60).

## Organizing

```
crossref-organizer --input /data/crossref --output-dir /data/by-member
```

Output is laid out as `<output-dir>/<member>/<prefix>/data.jsonl.gz`, with
each record written unchanged. A record without a `prefix` field takes the
part of its DOI before the first `/`, or `_unknown_`. Existing output files
are appended to, not replaced.

Work is done in two passes through a temporary directory (by default
`<output-dir>/_cr_temp`, or `--temp-dir`). Any existing temporary directory is
deleted at the start, and it is removed again at the end.

To keep only some members, pass a JSON filter file with `--filter-file`. Its
keys are member IDs; each value is either `null` (keep every prefix of that
member) or a list of the prefixes to keep:

```json
{
  "78": null,
  "311": ["10.1016", "10.1006"]
}
```

With a filter, a line is only parsed if it contains `"member": "<id>"` or
`"member": <id>` for one of the listed members, exactly as written with one
space after the colon; other lines are skipped unread.

Other options: `--max-intermediate-files` (default 256) and
`--max-final-files-per-member` (default 128) bound the number of files held
open at once; `--log-level`, `--threads` and `-s/--stats-interval` as above.

## Sampling

```
crossref-sampler --input-dir /data/crossref --output-file sample.jsonl -n 10000
```

Lines are counted first, the requested number is shared out across files in
proportion to their line counts, and each file is then sampled with a
reservoir. The combined sample is shuffled unless `--no-shuffle` is given. If
more lines are asked for than exist, every line is written. A sample count of
0 writes an empty output file; the output file's directory is created if
needed.

Options: `-i/--input-dir`, `-o/--output-file`, `-n/--sample-count` (all
required), `--log-level`, `--threads`, `--no-shuffle`.

## Use from Python

The same work can be started from code:

- `crossref_datafile.indexer.run_indexer(input_dir, output_dir, threads=0, stats_interval=60)`
  returns the collected `AggregateStats`, and raises `IndexingError` on failure.
- `crossref_datafile.organizer.run_organizer(input_dir, output_dir, temp_dir=None, ...)`
  returns an `OrganizerStats`, and raises `OrganizeError` on failure.
- `crossref_datafile.sampler.run_sampler(input_dir, output_file, sample_count, threads=0, shuffle=True, rng=None)`
  returns the sampled lines, and raises `SamplingError` on failure. Passing a
  seeded `random.Random` as `rng` makes the sample repeatable.

## Exit status

Every command exits with status 1 when any input file or processing step
fails, and 2 for invalid command-line arguments. The failures are written to
the log.