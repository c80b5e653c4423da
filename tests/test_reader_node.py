import io
import os
import tarfile

import pytest
import zstandard

from firecore.reader_node import (
    READER_NODE_VARIABLES,
    READER_NODE_VARIABLES_DOCUMENTATION,
    TarballNodeBootstrapper,
    is_bootstrapped,
    reader_node_variables_values,
)

CONTENT = b"chain data content"


def _tar_bytes(entries):
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        for name, data in entries:
            info = tarfile.TarInfo(name)
            if data is None:
                info.type = tarfile.DIRTYPE
                archive.addfile(info)
            else:
                info.size = len(data)
                archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def _sample_tar():
    return _tar_bytes([("db", None), ("db/blocks.log", CONTENT), ("top.txt", CONTENT)])


def _write_archive(tmp_path):
    archive = tmp_path / "snapshot.tar.zst"
    archive.write_bytes(zstandard.ZstdCompressor().compress(_sample_tar()))
    return archive


def test_variables_values_uses_resolver():
    values = reader_node_variables_values(lambda variable: f"value of {variable}")
    assert set(values) == {
        "{data-dir}",
        "{node-data-dir}",
        "{hostname}",
        "{start-block-num}",
        "{stop-block-num}",
    }
    assert all(value == f"value of {key}" for key, value in values.items())


def test_variables_match_documentation():
    values = reader_node_variables_values(lambda variable: variable)
    assert set(values) == set(READER_NODE_VARIABLES_DOCUMENTATION)
    assert set(values) == set(READER_NODE_VARIABLES)


def test_is_bootstrapped_missing_dir(tmp_path):
    assert is_bootstrapped(tmp_path / "missing") is False


def test_is_bootstrapped_empty_nested_dirs(tmp_path):
    (tmp_path / "a" / "b").mkdir(parents=True)
    assert is_bootstrapped(tmp_path) is False


def test_is_bootstrapped_with_nested_file(tmp_path):
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    (nested / "file").write_bytes(CONTENT)
    assert is_bootstrapped(tmp_path) is True


def test_create_chain_data_extracts(tmp_path):
    data_dir = tmp_path / "node"
    bootstrapper = TarballNodeBootstrapper("unused.tar.zst", data_dir)
    bootstrapper.create_chain_data(io.BytesIO(_sample_tar()))
    assert (data_dir / "db" / "blocks.log").read_bytes() == CONTENT
    assert (data_dir / "top.txt").read_bytes() == CONTENT


def test_create_chain_data_missing_parent_dir(tmp_path):
    data = _tar_bytes([("nested/file.txt", CONTENT)])
    bootstrapper = TarballNodeBootstrapper("unused.tar.zst", tmp_path / "node")
    with pytest.raises(OSError, match="unable to create file"):
        bootstrapper.create_chain_data(io.BytesIO(data))


def test_bootstrap_from_local_path(tmp_path):
    archive = _write_archive(tmp_path)
    data_dir = tmp_path / "node"
    TarballNodeBootstrapper(str(archive), data_dir).bootstrap()
    assert (data_dir / "db" / "blocks.log").read_bytes() == CONTENT
    assert is_bootstrapped(data_dir) is True


def test_bootstrap_from_file_url(tmp_path):
    archive = _write_archive(tmp_path)
    data_dir = tmp_path / "node"
    TarballNodeBootstrapper(archive.as_uri(), data_dir).bootstrap()
    assert (data_dir / "top.txt").read_bytes() == CONTENT


def test_bootstrap_skipped_when_already_bootstrapped(tmp_path):
    data_dir = tmp_path / "node"
    data_dir.mkdir()
    (data_dir / "existing").write_bytes(CONTENT)
    TarballNodeBootstrapper(str(tmp_path / "missing.tar.zst"), data_dir).bootstrap()
    assert os.listdir(data_dir) == ["existing"]


def test_bootstrap_missing_archive(tmp_path):
    bootstrapper = TarballNodeBootstrapper(str(tmp_path / "missing.tar.zst"), tmp_path / "node")
    with pytest.raises(OSError, match="cannot get snapshot"):
        bootstrapper.bootstrap()


def test_bootstrap_unsupported_scheme(tmp_path):
    bootstrapper = TarballNodeBootstrapper("ftp://example.com/data.tar.zst", tmp_path / "node")
    with pytest.raises(ValueError, match="unsupported"):
        bootstrapper.bootstrap()