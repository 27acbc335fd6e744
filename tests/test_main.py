import json

import pytest

import main
from config import parse_args, resolve_engine


def test_parse_args_defaults():
    cfg = parse_args(["in", "out", "gaussian"])
    assert cfg.engine == 'sequential'
    assert cfg.gaussian_size == 27
    assert cfg.gaussian_sigma == 13.0
    assert cfg.block == (16, 16)
    assert cfg.on_load_error == 'abort'


def test_engine_aliases():
    assert resolve_engine('OMP') == 'openmp'
    assert resolve_engine('gpu') == 'cuda'
    assert resolve_engine('mpi') == 'mpi'


@pytest.mark.parametrize("argv", [
    ["in", "out"],
    ["in", "out", "sharpen"],
    ["in", "out", "gaussian", "--gaussian-size", "4"],
    ["in", "out", "sobel", "--engine", "quantum"],
])
def test_bad_arguments_exit_non_zero(argv):
    with pytest.raises(SystemExit) as info:
        main.main(argv)
    assert info.value.code != 0


def test_successful_run_writes_timings(image_dir, output_dir, capsys):
    code = main.main([str(image_dir), str(output_dir), "grayscale", "--engine", "threaded",
                      "--workers", "2", "--echo-json"])
    assert code == 0
    document = json.loads((output_dir / "timings.json").read_text())
    assert len(document['individual_image_times']) == 3
    assert json.loads(capsys.readouterr().out) == document


def test_missing_input_exits_one(tmp_path):
    assert main.main([str(tmp_path / "absent"), str(tmp_path / "out"), "sobel"]) == 1
    assert not (tmp_path / "out" / "timings.json").exists()


def test_engine_entry_point_fixes_engine(image_dir, output_dir):
    assert main.main([str(image_dir), str(output_dir), "sobel"], engine='sequential') == 0
    assert (output_dir / "a_square_sobel.png").is_file()


def test_log_file_is_numbered(image_dir, tmp_path):
    log = tmp_path / "logs" / "run.txt"
    for _ in range(2):
        assert main.main([str(image_dir), str(tmp_path / "out"), "grayscale", "--log-file", str(log)]) == 0
    assert log.is_file()
    assert (tmp_path / "logs" / "run_1.txt").is_file()


def test_tag_rank_prefixes_log_lines(capsys):
    import logging

    from config import setup_logging, tag_rank

    setup_logging()
    tag_rank(2)
    logging.getLogger('run_mpi').info("hello")
    assert "[rank 2] [INFO] run_mpi: hello" in capsys.readouterr().err
