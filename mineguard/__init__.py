"""MineGuard: helmet-compliance monitoring with automated safety alerts."""
