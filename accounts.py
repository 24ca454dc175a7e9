"""
SID -> username resolution from an offline SOFTWARE hive.
"""

import ntpath
from pathlib import Path
from typing import Any

from Registry import Registry

from artifact_errors import ReadFailure

PROFILE_LIST = r"Microsoft\Windows NT\CurrentVersion\ProfileList"

# Service accounts whose profiles point at systemprofile / ServiceProfiles
WELL_KNOWN_SIDS: dict[str, str] = {
    "S-1-5-18": "SYSTEM",
    "S-1-5-19": "LOCAL SERVICE",
    "S-1-5-20": "NETWORK SERVICE",
}


def hive_open(path: Path):
    if not path.exists():
        raise ReadFailure(str(path), "registry hive not found")
    try:
        return Registry.Registry(str(path))
    except Exception as ex:
        raise ReadFailure(str(path), f"not a registry hive ({ex})") from ex


def _open_key(hive, key_path: str):
    return hive.open(key_path.strip("\\"))


def _norm_reg_value(v: Any) -> Any:
    if isinstance(v, (bytes, bytearray)):
        return bytes(v).decode("utf-16-le", errors="ignore").rstrip("\x00")
    return v


def reg_get_value(hive, key_path: str, value_name: str) -> Any | None:
    try:
        k = _open_key(hive, key_path)
        return _norm_reg_value(k.value(value_name).value())
    except Registry.RegistryKeyNotFoundException:
        return None
    except Registry.RegistryValueNotFoundException:
        return None


def reg_list_subkeys(hive, key_path: str) -> list[str]:
    try:
        k = _open_key(hive, key_path)
    except Registry.RegistryKeyNotFoundException:
        return []
    return [sk.name() for sk in k.subkeys()]


def load_profile_users(software_hive: Path | None = None) -> dict[str, str]:
    """
    Map SIDs to the last component of their ProfileImagePath.

    Without a hive only the well-known service SIDs resolve.
    """
    users = dict(WELL_KNOWN_SIDS)
    if software_hive is None:
        return users

    software = hive_open(software_hive)
    for sid in reg_list_subkeys(software, PROFILE_LIST):
        image = reg_get_value(software, rf"{PROFILE_LIST}\{sid}", "ProfileImagePath")
        if image and sid not in WELL_KNOWN_SIDS:
            users[sid] = ntpath.basename(str(image).rstrip("\\"))
    return users
