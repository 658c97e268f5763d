"""Status normalization.

Maps the battery and climate records returned by the vehicle service onto
the flat :class:`TelemetryRecord` published on the bus.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from leafbridge.exceptions import MalformedResponseError

NOT_CHARGING = "NOT_CHARGING"
NOT_CONNECTED = "NOT_CONNECTED"
CLIMATE_STOPPED = "STOP"


class TelemetryRecord(BaseModel):
    """One published telemetry snapshot.

    Field aliases are the JSON keys consumers of the telemetry topic rely on.
    Values read from the service are carried through as received; only the
    derived flags are computed here.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    status: Any = Field(default=None, alias="status_BatteryStatusRecords")
    soc: Any = Field(default=None, alias="SOC")
    is_battery_charging: bool = Field(alias="isBatteryCharging")
    cruising_range_ac_on: Any = Field(default=None, alias="CruisingRangeAcOn")
    cruising_range_ac_off: Any = Field(default=None, alias="CruisingRangeAcOff")
    is_plugged_in: bool = Field(alias="isPluggedin")
    is_remote_ac_on: bool | None = Field(default=None, alias="isRemoteACOn")
    """``None`` when the service returned no climate block."""
    pre_ac_temp: Any = Field(default=None, alias="PreAC_temp")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class ClimateConfirmation(BaseModel):
    """Published after a climate command was applied."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    is_remote_ac_on: bool = Field(alias="isRemoteACOn")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


def _climate_fields(climate: Any) -> dict[str, Any]:
    records = climate.get("RemoteACRecords") if isinstance(climate, dict) else None
    if not isinstance(records, dict) or not records:
        return {"is_remote_ac_on": None, "pre_ac_temp": None}
    return {
        "is_remote_ac_on": records.get("RemoteACOperation") != CLIMATE_STOPPED,
        "pre_ac_temp": records.get("PreAC_temp"),
    }


def normalize(battery: dict[str, Any], climate: dict[str, Any] | None) -> TelemetryRecord:
    """Build a :class:`TelemetryRecord` from raw battery and climate records.

    Raises
    ------
    MalformedResponseError
        If the battery record does not have the expected nesting.  A missing
        or unusual climate block is not an error.
    """
    try:
        records = battery["BatteryStatusRecords"]
        status = records["BatteryStatus"]
        fields: dict[str, Any] = {
            "status": battery.get("status"),
            "soc": status["SOC"]["Value"],
            "is_battery_charging": status["BatteryChargingStatus"] != NOT_CHARGING,
            "cruising_range_ac_on": records.get("CruisingRangeAcOn"),
            "cruising_range_ac_off": records.get("CruisingRangeAcOff"),
            "is_plugged_in": records["PluginState"] != NOT_CONNECTED,
        }
    except (KeyError, TypeError, AttributeError) as exc:
        raise MalformedResponseError(f"Unexpected battery record shape: {exc!r}") from exc

    fields.update(_climate_fields(climate))
    return TelemetryRecord(**fields)
