import gzip
import os
import shutil
import tempfile
import unittest
from datetime import date, timedelta

import bitmex_tick_loader as loader
from bitmex_tick_loader import (
    ConfigError, DaySink, LocalArchiveSource, RowValidator, SourceError, run_range,
)

HEADER = "timestamp,symbol,side,size,price,tickDirection,trdMatchID,grossValue,homeNotional,foreignNotional"
TRADE_ID = "7ff37f6c-c4f6-4226-20f8-460ec68d4b50"


def perp_row(day: date, second: int) -> str:
    return (f"{day.isoformat()}D00:00:{second:02d}.000000000,XBTUSD,Sell,1200,3690,MinusTick,"
            f"{TRADE_ID},32520000,0.3252,1200")


class RecordingSource(LocalArchiveSource):
    def __init__(self, directory):
        super().__init__(directory)
        self.opened = []

    def open(self, day):
        self.opened.append(day)
        return super().open(day)


class ExplodingSource:
    def open(self, day):
        raise AssertionError(f"source should not be used for {day}")


class RangeControllerTest(unittest.TestCase):
    def setUp(self):
        self.tempdir = tempfile.mkdtemp(prefix="loader_range_")
        self.archive_dir = os.path.join(self.tempdir, "archives")
        self.data_dir = os.path.join(self.tempdir, "data")
        self.logs_dir = os.path.join(self.tempdir, "logs")
        os.makedirs(self.archive_dir, exist_ok=True)

        loader.configure_paths(self.data_dir)
        loader.LOG_DIR = self.logs_dir
        loader.LOG_FILE = os.path.join(self.logs_dir, "loader.log")
        self.logger = loader.setup_logging(verbose=False)

        self.start = date(2020, 1, 1)
        # day i has i + 1 clean rows plus a header and one bad row
        for i in range(3):
            day = self.start + timedelta(days=i)
            self._write_archive(day, [HEADER] + [perp_row(day, s) for s in range(i + 1)] + ["bad,row"])

    def tearDown(self):
        loader.shutdown_logging()
        shutil.rmtree(self.tempdir, ignore_errors=True)

    def _write_archive(self, day, lines):
        path = os.path.join(self.archive_dir, f"{loader.day_token(day)}.csv.gz")
        with gzip.open(path, "wb") as f:
            f.write(("\n".join(lines) + "\n").encode("utf-8"))

    def _run(self, start, end, source=None, **kwargs):
        return run_range(
            start, end,
            logger=self.logger,
            source=source or LocalArchiveSource(self.archive_dir),
            validator=RowValidator(),
            sink=DaySink(fmt="csv", logger=self.logger),
            show_progress=False,
            **kwargs,
        )

    def test_processes_days_sequentially_end_exclusive(self):
        source = RecordingSource(self.archive_dir)
        report = self._run(self.start, self.start + timedelta(days=3), source=source)
        self.assertEqual(source.opened, [date(2020, 1, 1), date(2020, 1, 2), date(2020, 1, 3)])
        self.assertEqual([d.day for d in report.days], source.opened)
        self.assertEqual([d.accepted for d in report.days], [1, 2, 3])
        self.assertEqual(report.accepted, 6)
        self.assertEqual(report.rejected, 6)
        for token in ("20200101", "20200102", "20200103"):
            self.assertTrue(os.path.exists(os.path.join(self.data_dir, f"{token}.csv")))

        manifest = loader.load_manifest()
        self.assertEqual(sorted(manifest["days"]), ["20200101", "20200102", "20200103"])
        self.assertEqual(manifest["days"]["20200103"]["accepted"], 3)
        self.assertEqual(manifest["days"]["20200103"]["filename"], "20200103.csv")

    def test_range_totals_equal_sum_of_single_days(self):
        whole = self._run(self.start, self.start + timedelta(days=3))
        accepted = rejected = seen = 0
        for i in range(3):
            day = self.start + timedelta(days=i)
            single = self._run(day, day + timedelta(days=1))
            accepted += single.accepted
            rejected += single.rejected
            seen += single.seen
        self.assertEqual((whole.accepted, whole.rejected, whole.seen), (accepted, rejected, seen))

    def test_source_failure_aborts_remaining_range(self):
        os.remove(os.path.join(self.archive_dir, "20200102.csv.gz"))
        source = RecordingSource(self.archive_dir)
        with self.assertRaises(SourceError):
            self._run(self.start, self.start + timedelta(days=3), source=source)
        self.assertEqual(source.opened, [date(2020, 1, 1), date(2020, 1, 2)])
        # already persisted days stay on disk
        self.assertTrue(os.path.exists(os.path.join(self.data_dir, "20200101.csv")))
        self.assertFalse(os.path.exists(os.path.join(self.data_dir, "20200103.csv")))
        self.assertEqual(sorted(loader.load_manifest()["days"]), ["20200101"])

    def test_skip_failed_days_continues(self):
        os.remove(os.path.join(self.archive_dir, "20200102.csv.gz"))
        report = self._run(self.start, self.start + timedelta(days=3), continue_on_error=True)
        self.assertEqual(report.failed, [date(2020, 1, 2)])
        self.assertEqual([d.day for d in report.days], [date(2020, 1, 1), date(2020, 1, 3)])
        self.assertTrue(os.path.exists(os.path.join(self.data_dir, "20200103.csv")))

    def test_resume_skips_recorded_days(self):
        self._run(self.start, self.start + timedelta(days=2))
        source = RecordingSource(self.archive_dir)
        report = self._run(self.start, self.start + timedelta(days=3), source=source, resume=True)
        self.assertEqual(report.resumed, [date(2020, 1, 1), date(2020, 1, 2)])
        self.assertEqual(source.opened, [date(2020, 1, 3)])

    def test_resume_reprocesses_day_whose_file_is_gone(self):
        self._run(self.start, self.start + timedelta(days=1))
        os.remove(os.path.join(self.data_dir, "20200101.csv"))
        report = self._run(self.start, self.start + timedelta(days=1), source=RecordingSource(self.archive_dir),
                           resume=True)
        self.assertEqual(report.resumed, [])
        self.assertEqual(len(report.days), 1)

    def test_resume_with_everything_done_never_touches_source(self):
        self._run(self.start, self.start + timedelta(days=3))
        report = self._run(self.start, self.start + timedelta(days=3), source=ExplodingSource(), resume=True)
        self.assertEqual(len(report.resumed), 3)
        self.assertEqual(report.days, [])

    def test_sink_outside_data_dir_resumes_and_audits(self):
        other = os.path.join(self.tempdir, "elsewhere")
        end = self.start + timedelta(days=1)
        run_range(self.start, end, logger=self.logger, source=LocalArchiveSource(self.archive_dir),
                  validator=RowValidator(), sink=DaySink(data_dir=other, fmt="csv", logger=self.logger),
                  show_progress=False)
        self.assertTrue(os.path.exists(os.path.join(other, "20200101.csv")))
        self.assertTrue(loader.verify_manifest(self.logger))

        report = run_range(self.start, end, logger=self.logger, source=ExplodingSource(),
                           validator=RowValidator(), sink=DaySink(data_dir=other, fmt="csv", logger=self.logger),
                           resume=True, show_progress=False)
        self.assertEqual(report.resumed, [self.start])

    def test_overlapping_runs_keep_each_others_days(self):
        for i in (3, 4):
            day = self.start + timedelta(days=i)
            self._write_archive(day, [HEADER, perp_row(day, 1)])
        controller = self

        class OverlappingSink(DaySink):
            """Finishes a second range while the first one is writing its day."""
            def write(self, day, ticks):
                if day == controller.start:
                    controller._run(date(2020, 1, 4), date(2020, 1, 6))
                return super().write(day, ticks)

        run_range(self.start, self.start + timedelta(days=1), logger=self.logger,
                  source=LocalArchiveSource(self.archive_dir), validator=RowValidator(),
                  sink=OverlappingSink(fmt="csv", logger=self.logger), show_progress=False)
        self.assertEqual(sorted(loader.load_manifest()["days"]), ["20200101", "20200104", "20200105"])
        self.assertTrue(loader.verify_manifest(self.logger))

    def test_invalid_range_is_rejected_before_any_day(self):
        with self.assertRaises(ConfigError):
            self._run(self.start, self.start, source=ExplodingSource())
        with self.assertRaises(ConfigError):
            self._run(self.start + timedelta(days=1), self.start, source=ExplodingSource())


class StartupConfigTest(unittest.TestCase):
    def test_parse_range(self):
        self.assertEqual(loader.parse_range("2020-01-01", "20200103"), (date(2020, 1, 1), date(2020, 1, 3)))
        self.assertEqual(loader.parse_range("2020-01-01T05:00:00Z", "2020-01-02"), (date(2020, 1, 1), date(2020, 1, 2)))

    def test_parse_range_errors(self):
        for start, end in ((None, "2020-01-02"), ("2020-01-01", ""), ("not a date", "2020-01-02"),
                           ("2020-01-02", "2020-01-02"), ("2020-01-03", "2020-01-02")):
            with self.assertRaises(ConfigError, msg=f"{start!r} {end!r}"):
                loader.parse_range(start, end)

    def test_iter_days_crosses_month_and_leap_day(self):
        days = list(loader.iter_days(date(2020, 2, 28), date(2020, 3, 2)))
        self.assertEqual(days, [date(2020, 2, 28), date(2020, 2, 29), date(2020, 3, 1)])

    def test_parse_accepted_tickers(self):
        self.assertEqual(loader.parse_accepted_tickers('["XBTUSD", "ETHUSD"]'), ["XBTUSD", "ETHUSD"])
        self.assertEqual(loader.parse_accepted_tickers("XBTUSD, ETHUSD"), ["XBTUSD", "ETHUSD"])
        self.assertEqual(loader.parse_accepted_tickers(""), [])
        self.assertEqual(loader.parse_accepted_tickers("[]"), [])
        self.assertEqual(loader.parse_accepted_tickers(None), [])
        with self.assertRaises(ConfigError):
            loader.parse_accepted_tickers("[XBTUSD")
        with self.assertRaises(ConfigError):
            loader.parse_accepted_tickers('[{"a": 1}')


class CliTest(unittest.TestCase):
    def setUp(self):
        self.tempdir = tempfile.mkdtemp(prefix="loader_cli_")
        self.archive_dir = os.path.join(self.tempdir, "archives")
        self.data_dir = os.path.join(self.tempdir, "data")
        os.makedirs(self.archive_dir, exist_ok=True)
        loader.LOG_DIR = os.path.join(self.tempdir, "logs")
        loader.LOG_FILE = os.path.join(loader.LOG_DIR, "loader.log")
        day = date(2020, 1, 1)
        with gzip.open(os.path.join(self.archive_dir, "20200101.csv.gz"), "wb") as f:
            f.write(("\n".join([HEADER, perp_row(day, 1), perp_row(day, 2)]) + "\n").encode("utf-8"))

    def tearDown(self):
        loader.shutdown_logging()
        shutil.rmtree(self.tempdir, ignore_errors=True)

    def _main(self, *args):
        return loader.main(["--quiet", "--data-dir", self.data_dir] + list(args))

    def test_backfill_then_audit(self):
        code = self._main("backfill", "--start", "2020-01-01", "--end", "2020-01-02",
                          "--source-dir", self.archive_dir, "--tickers", '["XBTUSD"]', "--no-progress")
        self.assertEqual(code, 0)
        df = loader.read_tick_file(os.path.join(self.data_dir, "20200101.csv"))
        self.assertEqual(len(df), 2)
        self.assertEqual(self._main("audit"), 0)

    def test_invalid_dates_exit_before_processing(self):
        code = self._main("backfill", "--start", "2020-01-02", "--end", "2020-01-01", "--source-dir", self.archive_dir)
        self.assertEqual(code, 2)
        self.assertFalse(os.path.exists(os.path.join(self.data_dir, "manifest.json")))

    def test_missing_day_aborts_with_error_code(self):
        code = self._main("backfill", "--start", "2020-01-01", "--end", "2020-01-03",
                          "--source-dir", self.archive_dir, "--no-progress")
        self.assertEqual(code, 1)
        self.assertTrue(os.path.exists(os.path.join(self.data_dir, "20200101.csv")))

    def test_skip_failed_days_flag(self):
        code = self._main("backfill", "--start", "2020-01-01", "--end", "2020-01-03",
                          "--source-dir", self.archive_dir, "--skip-failed-days", "--no-progress")
        self.assertEqual(code, 0)


if __name__ == "__main__":
    unittest.main(verbosity=2)
