"""Backup, restore and reset engine for a ticket tracker."""
