"""
Face Attendance Verification Service

Biometric attendance verification for an employee-management application:
- Burst-of-frames face verification with a frame-count liveness heuristic
- Frame quality gating (confidence, size, centering, frontality)
- Office geofence check on the reported GPS coordinate
- DeepFace for detection and embeddings, FastAPI for the HTTP surface
"""

__version__ = "1.0.0"
