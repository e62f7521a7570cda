"""
Attendance Service - Face Recognition Attendance

A modular Python service that enrolls people from three photos and takes
per-session attendance by matching faces in class photos against a roster.
"""

__version__ = "1.0.0"
__author__ = "Attendance Service Team"
