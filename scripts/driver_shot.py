"""Driver off the tee: 167 mph ball speed, calm air"""

SCRIPT = {
    "clear": True,
    "wind": {"speed": 0.0, "direction": 180.0, "log": False},
    "launch": {
        "speed":     74.65,   # m/s
        "angle":     10.9,    # deg
        "heading":   0.0,     # deg
        "spin":      2600.0,  # rpm
        "spin_axis": 0.0,     # deg, 0 = pure backspin
    },
}
