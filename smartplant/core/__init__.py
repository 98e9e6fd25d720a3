# Core module: settings, errors and dependency wiring
