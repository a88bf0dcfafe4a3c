"""Collaborative row-editing core for the Sales grid."""
