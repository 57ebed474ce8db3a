"""
Test Suite for the Self-Healing Loop

One module per component of the healing package:
- state store and document schemas
- event stream, thresholds and issue classifier
- strategies, action executor and intervention tracker
- event monitor (end to end)
"""
