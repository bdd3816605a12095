import io
import os
import tempfile
import unittest
from contextlib import redirect_stdout

import numpy as np

from refstr import ReferenceSTRScanner, ReferenceSTRs, STRSite, main


CHROMOSOMES = {
    "chr1": "GTCTATATATATTTTAATTAATTAATTAATTAAATATATTTTCTGCTGCCTTTTGGAT",
    "chr2": "A" * 30,
    "chrM": "TGATTTGCTCTGTCTGCTGCTGCTGCCTTCAGTAGGGTTGCACGCCTGGGCACGCCTGGAAT",
}


def create_test_fasta(sequences, filename):
    """Create a test FASTA file."""
    with open(filename, 'w') as f:
        for name, seq in sequences.items():
            f.write(f">{name} test sequence\n")
            # Write in 25-char lines, lowercase to check normalisation
            for i in range(0, len(seq), 25):
                f.write(seq[i:i+25].lower() + "\n")


class ReferenceScannerTests(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.tmpdir = tempfile.TemporaryDirectory()
        cls.reference = os.path.join(cls.tmpdir.name, "ref.fa")
        create_test_fasta(CHROMOSOMES, cls.reference)

    @classmethod
    def tearDownClass(cls):
        cls.tmpdir.cleanup()

    def make_scanner(self, **kwargs):
        kwargs.setdefault("max_period", 6)
        scanner = ReferenceSTRScanner(self.reference, **kwargs)
        scanner.load_reference()
        return scanner

    def read_rows(self, filename):
        with open(filename) as f:
            return [line.rstrip("\n").split("\t") for line in f if not line.startswith("#")]

    def test_load_reference(self):
        scanner = ReferenceSTRScanner(self.reference)
        sequences = scanner.load_reference()
        self.assertEqual(list(sequences), ["chr1", "chr2", "chrM"])
        for name, seq in CHROMOSOMES.items():
            self.assertEqual(sequences[name], seq.encode())

    def test_parse_region(self):
        scanner = self.make_scanner()
        self.assertEqual(scanner.parse_region("chr1"), ("chr1", 0, len(CHROMOSOMES["chr1"])))
        self.assertEqual(scanner.parse_region("chr1:10-30"), ("chr1", 10, 30))
        self.assertEqual(scanner.parse_region("chrM:1,0-2,0"), ("chrM", 10, 20))
        self.assertEqual(scanner.parse_region("chr2:5"), ("chr2", 5, 30))
        for bad in ("chr9", "chr9:1-2", "chr1:x-3", "chr1:20-10", "chr2:0-31"):
            with self.assertRaises(ValueError, msg=bad):
                scanner.parse_region(bad)

    def test_sites_do_not_depend_on_chunk_size(self):
        for chrom, seq in CHROMOSOMES.items():
            whole = ReferenceSTRs.of(seq.encode(), 0, len(seq), 6)
            expected = list(whole.sites(chrom))
            for chunk_size in (1, 7, 1000):
                scanner = self.make_scanner(chunk_size=chunk_size)
                self.assertEqual(list(scanner.iter_sites(chrom)), expected, f"{chrom} chunk={chunk_size}")

    def test_region_sites(self):
        scanner = self.make_scanner(chunk_size=4)
        seq = CHROMOSOMES["chr1"].encode()
        full = ReferenceSTRs.of(seq, 0, len(seq), 6)
        sites = list(scanner.iter_sites("chr1", 10, 30))
        self.assertEqual(len(sites), 20)
        for site in sites:
            self.assertEqual(site.period, full.period(site.position))
            self.assertEqual(site.repeat_length, full.repeat_length(site.position))

    def test_site_formats(self):
        site = STRSite(chrom="chr1", position=4, period=2, repeat_length=4, forward_count=2, unit="AC")
        self.assertEqual(site.to_tsv(), "chr1\t4\t2\t4\tAC")
        self.assertEqual(site.to_bed(), "chr1\t4\t5\tAC\t4\t2")

    def test_histogram_caps_repeat_length(self):
        scanner = self.make_scanner(max_repeat_length=20)
        hist = scanner.build_histogram(["chr2"])
        self.assertEqual(hist.shape, (7, 21))
        self.assertEqual(hist[1, 20], 30)
        self.assertEqual(int(hist.sum()), 30)

    def test_histogram_matches_sites(self):
        scanner = self.make_scanner(max_repeat_length=10, chunk_size=9)
        hist = scanner.build_histogram()
        expected = np.zeros_like(hist)
        for chrom in CHROMOSOMES:
            for site in scanner.iter_sites(chrom):
                expected[site.period, min(site.repeat_length, 10)] += 1
        np.testing.assert_array_equal(hist, expected)
        self.assertEqual(int(hist[0].sum()), 0)
        self.assertEqual(int(hist[:, 0].sum()), 0)

    def test_parallel_histogram_matches_sequential(self):
        scanner = self.make_scanner(max_repeat_length=10)
        np.testing.assert_array_equal(scanner.build_histogram(n_jobs=2), scanner.build_histogram(n_jobs=-1))

    def test_save_tsv(self):
        scanner = self.make_scanner()
        out = os.path.join(self.tmpdir.name, "strs.tsv")
        written = scanner.save_results(out, ["chr1:10-30", "chr2"], "tsv")
        self.assertEqual(written, 50)
        rows = self.read_rows(out)
        self.assertEqual(len(rows), 50)
        self.assertEqual(rows[0][:2], ["chr1", "10"])
        self.assertEqual(rows[-1], ["chr2", "29", "1", "30", "A"])

    def test_save_bed(self):
        scanner = self.make_scanner()
        out = os.path.join(self.tmpdir.name, "strs.bed")
        written = scanner.save_results(out, ["chr2:0-3"], "bed")
        self.assertEqual(written, 3)
        self.assertEqual(self.read_rows(out), [
            ["chr2", "0", "1", "A", "30", "1"],
            ["chr2", "1", "2", "A", "30", "1"],
            ["chr2", "2", "3", "A", "30", "1"],
        ])

    def test_save_histogram(self):
        scanner = self.make_scanner(max_repeat_length=20)
        out = os.path.join(self.tmpdir.name, "hist.tsv")
        written = scanner.save_results(out, ["chr2"], "histogram")
        self.assertEqual(written, 30)
        rows = self.read_rows(out)
        self.assertEqual(rows[0][0], "period")
        self.assertEqual(len(rows), 1 + 6)
        self.assertEqual(rows[1][0], "1")
        self.assertEqual(rows[1][-1], "30")

    def test_unknown_format(self):
        scanner = self.make_scanner()
        with self.assertRaises(ValueError):
            scanner.save_results(os.path.join(self.tmpdir.name, "x"), None, "vcf")

    def test_invalid_parameters(self):
        for kwargs in ({"max_period": 0}, {"max_repeat_length": 0}, {"chunk_size": 0}):
            with self.assertRaises(ValueError):
                ReferenceSTRScanner(self.reference, **kwargs)

    def test_command_line(self):
        out = os.path.join(self.tmpdir.name, "cli.tsv")
        stdout = io.StringIO()
        with redirect_stdout(stdout):
            main([self.reference, "-o", out, "--region", "chrM:0-20", "--max-period", "6", "--chunk-size", "7"])
        self.assertIn("Completed! Scanned 20 positions.", stdout.getvalue())
        rows = self.read_rows(out)
        seq = CHROMOSOMES["chrM"].encode()
        full = ReferenceSTRs.of(seq, 0, len(seq), 6)
        self.assertEqual(len(rows), 20)
        for row in rows:
            position = int(row[1])
            self.assertEqual(int(row[2]), full.period(position))
            self.assertEqual(int(row[3]), full.repeat_length(position))
            self.assertEqual(row[4], full.repeat_unit_as_string(position))

    def test_command_line_rejects_bad_region(self):
        with redirect_stdout(io.StringIO()), self.assertRaises(SystemExit):
            main([self.reference, "-o", os.path.join(self.tmpdir.name, "bad.tsv"), "--region", "chrX:0-5"])


if __name__ == "__main__":
    unittest.main()
