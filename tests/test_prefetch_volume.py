import pytest

from artifact_errors import UnknownSignature, UnsupportedFormatVersion
from binparse import ByteCursor, InsufficientData
from conftest import VOLUME, directory_table, prefetch_file, volume_info
from prefetch_volume import (
    decode_prefetch_volumes,
    decode_volume_records,
    get_directories,
    volume_trailer_size,
)


def test_parse_volume():
    result = decode_volume_records(volume_info(), 0, 1, 30)

    assert result.complete
    assert len(result.volumes) == 1
    volume = result.volumes[0]
    assert volume.volume_path == "\\VOLUME{01d6828290579d13-4290933e}"
    assert volume.volume_path_offset == 96
    assert volume.volume_number_chars == 34
    assert volume.volume_creation == 1599200033
    assert volume.volume_serial == 0x4290933E
    assert volume.file_ref_offset == 168
    assert volume.file_ref_data_size == 696
    assert volume.directory_strings_offset == 864
    assert volume.number_directory_strings == 15

    assert volume.directories[0] == "\\VOLUME{01d6828290579d13-4290933e}\\$EXTEND"
    assert volume.directories[8] == "\\VOLUME{01d6828290579d13-4290933e}\\USERS\\BOB\\APPDATA\\LOCAL\\TEMP"
    assert volume.directories[14] == "\\VOLUME{01d6828290579d13-4290933e}\\WINDOWS\\SYSWOW64"


def test_get_directories():
    results = get_directories(ByteCursor(directory_table()), 0, 15)

    assert len(results) == 15
    assert results[2] == f"{VOLUME}\\PROGRAMDATA\\CHOCOLATEY"
    assert results[6] == f"{VOLUME}\\USERS\\BOB\\APPDATA"
    assert results[11] == f"{VOLUME}\\WINDOWS"
    assert results[13] == f"{VOLUME}\\WINDOWS\\SYSTEM32"


def test_offsets_are_relative_to_set_start():
    padding = b"\xff" * 40
    result = decode_volume_records(padding + volume_info(), len(padding), 1, 30)

    assert result.complete
    assert result.volumes[0].volume_path == VOLUME
    assert len(result.volumes[0].directories) == 15


def test_remaining_follows_trailer():
    data = volume_info()
    result = decode_volume_records(data, 0, 1, 30)
    assert result.remaining == data[36 + 60 :]

    older = decode_volume_records(data, 0, 1, 23)
    assert older.remaining == data[36 + 68 :]


@pytest.mark.parametrize("version,size", [(23, 68), (26, 68), (30, 60)])
def test_trailer_sizes(version, size):
    assert volume_trailer_size(version) == size


@pytest.mark.parametrize("version", [0, 17, 24, 31])
def test_unsupported_version_keeps_decoded_records(version):
    result = decode_volume_records(volume_info(), 0, 3, version)

    assert len(result.volumes) == 1
    assert isinstance(result.error, UnsupportedFormatVersion)
    assert result.error.version == version
    assert not result.complete
    # Stops on the entry it could not finish
    assert result.remaining == volume_info()


def test_zero_count_is_empty():
    result = decode_volume_records(volume_info(), 0, 0, 30)
    assert result.volumes == []
    assert result.error is None

    # No entry is decoded, so the version is never looked up
    result = decode_volume_records(volume_info(), 0, 0, 99)
    assert result.volumes == []
    assert result.error is None


def test_truncated_set_keeps_partial_results():
    data = volume_info()
    # Volume path and directory table lie past the cut
    result = decode_volume_records(data[:120], 0, 1, 30)
    assert result.volumes == []
    assert isinstance(result.error, InsufficientData)


def test_offset_past_end():
    result = decode_volume_records(b"\x00" * 8, 16, 1, 30)
    assert result.volumes == []
    assert isinstance(result.error, InsufficientData)


def test_decode_is_repeatable():
    data = volume_info()
    assert decode_volume_records(data, 0, 1, 30) == decode_volume_records(data, 0, 1, 30)


def test_decode_prefetch_volumes():
    decoded = decode_prefetch_volumes(prefetch_file(30, "PSEXEC.EXE"))

    assert decoded.executable == "PSEXEC.EXE"
    assert decoded.version == 30
    assert decoded.error is None
    assert len(decoded.volumes) == 1
    assert decoded.volumes[0].volume_serial == 0x4290933E


def test_compressed_prefetch_rejected():
    with pytest.raises(UnsupportedFormatVersion):
        decode_prefetch_volumes(b"MAM\x04" + b"\x00" * 64)


def test_bad_prefetch_signature():
    with pytest.raises(UnknownSignature):
        decode_prefetch_volumes(b"\x1e\x00\x00\x00XXXX" + b"\x00" * 0x100)
