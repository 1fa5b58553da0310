# -*- coding: utf-8 -*-
"""Grid parameter names exchanged between the coordinator, workers and writers."""

# Import typing primitives.
from typing import Dict, Iterable, List

# Meteorological forcing grids owned by the coordinator (never asked to workers).
FORCING_PARAMETERS = ("TA", "RH", "VW", "PSUM", "PSUM_PH", "ISWR", "ILWR")

# Diagnostics computed per cell by the workers.
CELL_PARAMETERS = (
    "HS",       # snow height
    "SWE",      # snow water equivalent
    "TSS",      # snow surface temperature
    "TSG",      # ground surface temperature
    "TOP_ALB",  # surface albedo
    "SP",       # surface sphericity
    "RG",       # surface grain radius
    "N3",       # surface grain coordination number
    "RB",       # surface bond radius
    "GLACIER",  # 1 outside glaciers, nodata on glaciers
    "MNS",      # snow mass change applied by the drift module
    "RUNOFF",   # liquid water leaving the bottom of the pack
)

# Only available when the canopy module is enabled.
CANOPY_PARAMETERS = ("ISWR_BELOW_CAN", "CAN_INT")

# Surface properties pushed to an attached snow-drift module.
DRIFT_PARAMETERS = ("HS", "SP", "RG", "N3", "RB")

# CF metadata for parameters a grid plugin recognizes.
CF_METADATA: Dict[str, Dict[str, str]] = {
    "TA": {"standard_name": "air_temperature", "units": "K"},
    "RH": {"standard_name": "relative_humidity", "units": "1"},
    "VW": {"standard_name": "wind_speed", "units": "m s-1"},
    "PSUM": {"long_name": "precipitation_amount_per_step", "units": "kg m-2"},
    "PSUM_PH": {"long_name": "precipitation_phase", "units": "1"},
    "ISWR": {"standard_name": "surface_downwelling_shortwave_flux_in_air", "units": "W m-2"},
    "ILWR": {"standard_name": "surface_downwelling_longwave_flux_in_air", "units": "W m-2"},
    "HS": {"standard_name": "surface_snow_thickness", "units": "m"},
    "SWE": {"standard_name": "surface_snow_amount", "units": "kg m-2"},
    "TSS": {"standard_name": "surface_temperature", "units": "K"},
    "TSG": {"long_name": "ground_surface_temperature", "units": "K"},
    "TOP_ALB": {"standard_name": "surface_albedo", "units": "1"},
    "GLACIER": {"long_name": "glacier_mask", "units": "1"},
}


def is_recognized(name: str) -> bool:
    """True when a grid writer can address this parameter by identity."""
    return name.upper() in CF_METADATA


def is_known(name: str) -> bool:
    key = name.upper()
    return key in FORCING_PARAMETERS or key in CELL_PARAMETERS or key in CANOPY_PARAMETERS


def unique_output_grids(names: Iterable[str]) -> List[str]:
    """Upper-case, deduplicate and sort requested grid names."""
    return sorted({str(n).strip().upper() for n in names if str(n).strip()})


def split_names(value: str | Iterable[str] | None) -> List[str]:
    """Accept a whitespace separated string or a list of names."""
    if value is None:
        return []
    if isinstance(value, str):
        return value.split()
    return [str(v) for v in value]
