import json
import logging
import shutil
from pathlib import Path

import pytest
from watchdog.events import FileCreatedEvent

from unpacksort_runner import (
    ChangeFlagHandler,
    Pipeline,
    RunReport,
    Settings,
    apply_cli_overrides,
    apply_env_overrides,
    cfg_get,
    load_config,
    main,
    parse_args,
    settings_from_config,
    write_manifest_and_summary,
)
from unpacksort_signature import DONE_FILE, OWNER_FILE, TMP_DIR_NAME
from unpacksort_titles import MediaKind, OverrideRules


@pytest.fixture(autouse=True)
def reset_logger():
    yield
    log = logging.getLogger("UnpackSort")
    for h in list(log.handlers):
        log.removeHandler(h)
        h.close()
    log.propagate = True


def _settings(tmp_path: Path, **kw) -> Settings:
    kw.setdefault("retry_delay", 0)
    return Settings(
        watch_dir=tmp_path / "watch",
        dest_root=tmp_path / "lib",
        sevenzip="7z",
        unar=None,
        **kw,
    )


def decision_for(report: RunReport, directory: Path):
    for rec in reversed(report.records):
        if rec.directory == str(directory):
            return rec.decision
    return None


def _pipeline(settings, extractor, sorter):
    return Pipeline(settings, extractors=[extractor], sorter=sorter,
                    overrides=OverrideRules(), sleep=lambda s: None)


@pytest.fixture
def matrix(tmp_path, write_member):
    src = tmp_path / "watch" / "The.Matrix.1999.1080p"
    write_member(src / "matrix.rar")
    return src


# ---- configuration ----

def test_env_overrides_layer_over_yaml():
    cfg = {"retries": {"max_retries": 2, "retry_delay": 1}, "paths": {"dest_root": "/from/yaml"}}
    env = {"FORCE": "1", "MAX_RETRIES": "5", "RETRY_DELAY": "soon", "DEST_ROOT": "/from/env", "DRY_RUN": ""}
    merged = apply_env_overrides(cfg, env)
    assert cfg_get(merged, "behaviour.force") is True
    assert cfg_get(merged, "retries.max_retries") == 5
    assert cfg_get(merged, "retries.retry_delay") == 1
    assert cfg_get(merged, "paths.dest_root") == "/from/env"
    assert cfg_get(merged, "behaviour.dry_run") is None
    # input left untouched
    assert cfg["retries"]["max_retries"] == 2


def test_cli_overrides_win():
    args = parse_args(["/incoming", "--dest-root", "/library", "--dry-run", "--cleanup"])
    cfg = apply_cli_overrides({"paths": {"watch_dir": "/yaml"}}, args)
    settings = settings_from_config(cfg)
    assert settings.watch_dir == Path("/incoming")
    assert settings.dest_root == Path("/library")
    assert settings.dry_run and settings.cleanup_extracts
    assert not settings.force


def test_settings_defaults_and_types(tmp_path):
    cfg_file = tmp_path / "config.yaml"
    cfg_file.write_text(
        "tools:\n"
        "  sevenzip: 7zz\n"
        "  unar: ''\n"
        "  timeout_seconds: 600\n"
        "retries:\n"
        "  max_retries: 0\n"
        "behaviour:\n"
        "  force: 'yes'\n"
        "  known_miniseries: [dark]\n"
        "reporting:\n"
        f"  manifest_path: {tmp_path / 'manifest.json'}\n",
        encoding="utf-8",
    )
    settings = settings_from_config(load_config(cfg_file))
    assert settings.sevenzip == "7zz"
    assert settings.unar is None
    assert settings.timeout_seconds == 600.0
    assert settings.max_retries == 1
    assert settings.force is True
    assert settings.known_miniseries == ("dark",)
    assert settings.manifest_path == tmp_path / "manifest.json"
    assert settings.filebot == "filebot"
    assert settings.movies_root == settings.dest_root / "Movies"


def test_scalar_known_miniseries_is_one_title():
    settings = settings_from_config({"behaviour": {"known_miniseries": "band of brothers"}})
    assert settings.known_miniseries == ("band of brothers",)


def test_missing_config_file_is_empty(tmp_path):
    assert load_config(tmp_path / "nope.yaml") == {}


# ---- pipeline ----

def test_directories_root_first_then_sorted_children(tmp_path):
    settings = _settings(tmp_path)
    watch = settings.watch_dir
    for name in ("b", "A", TMP_DIR_NAME):
        (watch / name).mkdir(parents=True)
    (watch / "loose.txt").write_text("x", encoding="utf-8")
    pipeline = Pipeline(settings, extractors=[], sorter=object(), overrides=OverrideRules())
    assert pipeline.directories() == [watch, watch / "A", watch / "b"]


def test_second_run_is_a_no_op(tmp_path, matrix, make_extractor, make_sorter):
    fake = make_extractor(produce=("The.Matrix.1999.mkv",))
    sorter = make_sorter()
    settings = _settings(tmp_path)

    first = _pipeline(settings, fake, sorter).run()
    assert decision_for(first, matrix) == "movie"
    assert sorter.calls == [(matrix / TMP_DIR_NAME, MediaKind.MOVIE, "The Matrix (1999)", settings.dest_root)]
    assert (matrix / DONE_FILE).exists()

    second = _pipeline(settings, fake, sorter).run()
    assert decision_for(second, matrix) == "already_sorted"
    assert len(fake.calls) == 1
    assert len(sorter.calls) == 1


def test_failed_sort_is_retried_next_run_without_extracting(tmp_path, matrix, make_extractor, make_sorter):
    fake = make_extractor(produce=("The.Matrix.1999.mkv",))
    sorter = make_sorter(results=[False, True])
    settings = _settings(tmp_path)

    first = _pipeline(settings, fake, sorter).run()
    assert decision_for(first, matrix) == "movie_failed"
    assert not (matrix / DONE_FILE).exists()

    second = _pipeline(settings, fake, sorter).run()
    assert decision_for(second, matrix) == "movie"
    assert len(fake.calls) == 1
    assert len(sorter.calls) == 2
    assert (matrix / DONE_FILE).exists()


def test_movie_already_in_library_is_not_sorted(tmp_path, matrix, make_extractor, make_sorter):
    settings = _settings(tmp_path)
    (settings.movies_root / "The Matrix (1999)").mkdir(parents=True)
    sorter = make_sorter()
    report = _pipeline(settings, make_extractor(produce=("The.Matrix.1999.mkv",)), sorter).run()
    assert decision_for(report, matrix) == "movie_exists"
    assert sorter.calls == []
    assert (matrix / DONE_FILE).exists()


def test_tv_falls_back_to_manual_placement(tmp_path, write_member, make_extractor, make_sorter):
    src = tmp_path / "watch" / "Show.2019"
    write_member(src / "show.rar")
    settings = _settings(tmp_path)
    fake = make_extractor(produce=("Show.S01E01.mkv", "Show.S01E02.mkv"))
    report = _pipeline(settings, fake, make_sorter(results=False)).run()

    assert decision_for(report, src) == "tv_manual"
    season = settings.dest_root / "TV Shows" / "Show (2019)" / "Season 01"
    assert (season / "Show - S01E01.mkv").is_file()
    assert (season / "Show - S01E02.mkv").is_file()
    assert (src / DONE_FILE).exists()


def test_manual_placement_understands_lowercase_and_ep_markers(tmp_path, write_member, make_extractor, make_sorter):
    src = tmp_path / "watch" / "Show"
    write_member(src / "show.rar")
    settings = _settings(tmp_path)
    fake = make_extractor(produce=("show - e01.mkv", "show - e02.mkv", "Show Ep 3.mkv"))
    report = _pipeline(settings, fake, make_sorter(results=False)).run()

    assert decision_for(report, src) == "tv_manual"
    season = settings.dest_root / "TV Shows" / "Show" / "Season 01"
    assert sorted(p.name for p in season.iterdir()) == [
        "Show - S01E01.mkv", "Show - S01E02.mkv", "Show - S01E03.mkv",
    ]
    assert (src / DONE_FILE).exists()


def test_tv_without_episode_markers_is_not_marked_done(tmp_path, write_member, make_extractor, make_sorter):
    src = tmp_path / "watch" / "Series"
    write_member(src / "series.rar")
    settings = _settings(tmp_path)
    fake = make_extractor(produce=tuple(f"Series.Part.{n}.mkv" for n in range(1, 6)))
    report = _pipeline(settings, fake, make_sorter(results=False)).run()

    assert decision_for(report, src) == "tv_failed"
    assert not (src / DONE_FILE).exists()
    assert not (settings.dest_root / "TV Shows").exists()


def test_one_failing_directory_does_not_stop_the_rest(tmp_path, write_member, make_extractor, make_sorter):
    bad = tmp_path / "watch" / "A.Film"
    good = tmp_path / "watch" / "B.Film"
    write_member(bad / "a.rar")
    write_member(good / "b.rar")
    fake = make_extractor(accept={"b.rar"})
    report = _pipeline(_settings(tmp_path), fake, make_sorter()).run()

    assert decision_for(report, bad) == "extract_failed"
    assert decision_for(report, good) == "movie"
    assert report.summary() == {"extract_failed": 1, "movie": 1}


def test_unexpected_error_is_recorded(tmp_path, write_member, make_extractor):
    class ExplodingSorter:
        calls = 0

        def sort(self, *args):
            ExplodingSorter.calls += 1
            if ExplodingSorter.calls == 1:
                raise RuntimeError("boom")
            return True

    first = tmp_path / "watch" / "A.Film"
    second = tmp_path / "watch" / "B.Film"
    write_member(first / "a.rar")
    write_member(second / "b.rar")
    report = _pipeline(_settings(tmp_path), make_extractor(), ExplodingSorter()).run()
    assert decision_for(report, first) == "error"
    assert report.records[0].error == "boom"
    assert decision_for(report, second) == "movie"


def test_foreign_temp_dir_is_never_sorted_or_deleted(tmp_path, write_member, make_extractor, make_sorter):
    src = tmp_path / "watch" / "Film"
    write_member(src / "film.rar")
    foreign = src / TMP_DIR_NAME
    foreign.mkdir()
    (foreign / "my_home_video.mkv").write_bytes(b"precious")
    fake = make_extractor()
    sorter = make_sorter()
    settings = _settings(tmp_path, cleanup_extracts=True)

    for _ in range(2):
        report = _pipeline(settings, fake, sorter).run()
        assert decision_for(report, src) == "extract_failed"

    assert (foreign / "my_home_video.mkv").read_bytes() == b"precious"
    assert not (foreign / OWNER_FILE).exists()
    assert fake.calls == []
    assert sorter.calls == []


def test_overrides_file_is_reread_every_pass(tmp_path, matrix, make_extractor, make_sorter):
    special = tmp_path / "special-cases.conf"
    special.write_text("the matrix|Matrix First\n", encoding="utf-8")
    settings = _settings(tmp_path, force=True, special_cases_file=special)
    sorter = make_sorter()
    pipeline = Pipeline(settings, extractors=[make_extractor()], sorter=sorter, sleep=lambda s: None)

    pipeline.run()
    special.write_text("the matrix|Matrix Second\n", encoding="utf-8")
    pipeline.run()

    assert [call[2] for call in sorter.calls] == ["Matrix First (1999)", "Matrix Second (1999)"]


def test_cleanup_removes_temp_and_next_run_is_up_to_date(tmp_path, matrix, make_extractor, make_sorter):
    fake = make_extractor()
    settings = _settings(tmp_path, cleanup_extracts=True)
    _pipeline(settings, fake, make_sorter()).run()
    assert not (matrix / TMP_DIR_NAME).exists()

    report = _pipeline(settings, fake, make_sorter()).run()
    assert decision_for(report, matrix) == "up_to_date"
    assert len(fake.calls) == 1


def test_dry_run_leaves_no_completion_marker(tmp_path, matrix, make_extractor, make_sorter):
    settings = _settings(tmp_path, dry_run=True, cleanup_extracts=True)
    report = _pipeline(settings, make_extractor(), make_sorter()).run()
    assert decision_for(report, matrix) == "movie"
    assert not (matrix / DONE_FILE).exists()
    assert (matrix / TMP_DIR_NAME).is_dir()


def test_archive_without_video_is_not_extracted_again(tmp_path, matrix, make_extractor, make_sorter):
    fake = make_extractor(produce=("readme.txt",))
    sorter = make_sorter()
    settings = _settings(tmp_path)
    assert decision_for(_pipeline(settings, fake, sorter).run(), matrix) == "no_video"
    assert decision_for(_pipeline(settings, fake, sorter).run(), matrix) == "up_to_date"
    assert len(fake.calls) == 1
    assert sorter.calls == []


def test_force_reprocesses_sorted_directory(tmp_path, matrix, make_extractor, make_sorter):
    fake = make_extractor()
    sorter = make_sorter()
    _pipeline(_settings(tmp_path), fake, sorter).run()
    report = _pipeline(_settings(tmp_path, force=True), fake, sorter).run()
    assert decision_for(report, matrix) == "movie"
    assert len(fake.calls) == 2
    assert len(sorter.calls) == 2


# ---- report / watcher ----

def test_manifest_written(tmp_path):
    report = RunReport()
    report.add(tmp_path / "a", "movie", kind="movie", hint="Heat (1995)")
    report.add(tmp_path / "b", "extract_failed", error="all archive members failed")
    manifest = tmp_path / "out" / "manifest.json"
    write_manifest_and_summary(report, manifest, logging.getLogger("UnpackSort"))

    payload = json.loads(manifest.read_text(encoding="utf-8"))
    assert payload["total"] == 2
    assert payload["summary"] == {"movie": 1, "extract_failed": 1}
    assert payload["records"][0]["hint"] == "Heat (1995)"


def test_change_handler_ignores_own_files():
    handler = ChangeFlagHandler()
    handler.on_any_event(FileCreatedEvent(f"/watch/Show/{TMP_DIR_NAME}/ep.mkv"))
    handler.on_any_event(FileCreatedEvent(f"/watch/Show/{DONE_FILE}"))
    handler.on_any_event(FileCreatedEvent("/watch/Show/.extract_sig"))
    assert not handler.changed.is_set()
    handler.on_any_event(FileCreatedEvent("/watch/Show/show.rar"))
    assert handler.changed.is_set()


# ---- main ----

def _write_config(tmp_path: Path) -> Path:
    cfg = tmp_path / "config.yaml"
    cfg.write_text(
        "paths:\n"
        f"  watch_dir: {tmp_path / 'watch'}\n"
        f"  dest_root: {tmp_path / 'lib'}\n"
        f"  special_cases_file: {tmp_path / 'conf' / 'special-cases.conf'}\n"
        "tools:\n"
        "  sevenzip: 7z\n"
        "logging:\n"
        f"  log_file: {tmp_path / 'logs' / 'unpacksort.log'}\n"
        "reporting:\n"
        f"  manifest_path: {tmp_path / 'manifest.json'}\n",
        encoding="utf-8",
    )
    return cfg


@pytest.fixture
def clean_env(monkeypatch):
    for var in ("WATCH_DIR", "DEST_ROOT", "SPECIAL_CASES_FILE", "SEVENZ", "FILEBOT", "MAX_RETRIES",
                "RETRY_DELAY", "FORCE", "DRY_RUN", "PROGRESS", "CLEANUP_EXTRACTS", "LOG_FILE"):
        monkeypatch.delenv(var, raising=False)


def test_main_fails_when_tools_are_missing(tmp_path, monkeypatch, clean_env):
    (tmp_path / "watch").mkdir()
    monkeypatch.setattr(shutil, "which", lambda name: None)
    assert main(["--config", str(_write_config(tmp_path))]) == 1


def test_main_runs_a_pass(tmp_path, monkeypatch, clean_env):
    (tmp_path / "watch").mkdir()
    monkeypatch.setattr(shutil, "which", lambda name: f"/usr/bin/{name}")
    assert main(["--config", str(_write_config(tmp_path))]) == 0
    assert (tmp_path / "conf" / "special-cases.conf").is_file()
    assert json.loads((tmp_path / "manifest.json").read_text(encoding="utf-8"))["total"] == 0
    assert (tmp_path / "logs" / "unpacksort.log").is_file()


def test_main_rejects_missing_watch_dir(tmp_path, monkeypatch, clean_env):
    monkeypatch.setattr(shutil, "which", lambda name: f"/usr/bin/{name}")
    assert main(["--config", str(_write_config(tmp_path))]) == 2
