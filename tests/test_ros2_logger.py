import logging
import re

import pytest

from parcel_vision.vision_tools.ros2_logger import PACKAGE_LOGGER, ROS2StyleLogger, create_logger

LINE = re.compile(r"^\[\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}\.\d{3}\] \[(\w+)\] \[([\w.]+)\]: (.*)$")


@pytest.fixture
def file_logger(tmp_path):
    log = create_logger(node_name="test_node", log_dir=tmp_path, log_prefix="run", console_level=None)
    yield log
    log.close()


def read_lines(path):
    return [LINE.match(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_file_lines_use_ros2_format(file_logger, tmp_path):
    file_logger.info("engine ready")
    file_logger.warn("low valid depth")
    matches = read_lines(tmp_path / "run.log")
    assert all(matches)
    assert [(m.group(1), m.group(2), m.group(3)) for m in matches] == [
        ("INFO", "test_node", "engine ready"),
        ("WARNING", "test_node", "low valid depth"),
    ]


def test_package_records_reach_the_same_file(file_logger, tmp_path):
    logging.getLogger("parcel_vision.vision_nodes.plane_estimator").debug("plane fitted")
    matches = read_lines(tmp_path / "run.log")
    assert matches[-1].group(2) == "parcel_vision.vision_nodes.plane_estimator"
    assert matches[-1].group(3) == "plane fitted"


def test_close_detaches_handlers(tmp_path):
    log = create_logger(node_name="closing_node", log_dir=tmp_path, console_level=None)
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    assert package_logger.handlers
    log.close()
    assert not package_logger.handlers
    assert package_logger.propagate
    assert not log.handlers


def test_console_output_and_level(capsys):
    log = ROS2StyleLogger(node_name="console_node", console_level="WARNING", use_color=False, attach_package=False)
    try:
        log.info("hidden")
        log.error("shown")
        log.set_level("DEBUG")
        log.debug("now visible")
    finally:
        log.close()
    out = capsys.readouterr().out
    assert "hidden" not in out
    assert "[ERROR] [console_node]: shown" in out
    assert "[DEBUG] [console_node]: now visible" in out


def test_timestamped_file_name(tmp_path):
    log = create_logger(log_dir=tmp_path, log_prefix="cli", use_timestamp=True, console_level=None)
    try:
        log.info("x")
    finally:
        log.close()
    files = list(tmp_path.glob("cli_*.log"))
    assert len(files) == 1


def test_append_mode_keeps_previous_lines(tmp_path):
    for message in ("first", "second"):
        log = create_logger(log_dir=tmp_path, console_level=None, overwrite_log=False)
        log.info(message)
        log.close()
    text = (tmp_path / "parcel_measure.log").read_text(encoding="utf-8")
    assert "first" in text and "second" in text
