"""
Hospital PMS Core
=================

Core domain library for the hospital patient-management system: the
role-gated patient-status workflow (intake through discharge), tokenized
survey intake, appointment booking, and protection of resident registration numbers (Korean
national ID, referred to as "SSN" throughout) with AES-256-GCM encryption,
lookup hashing, display masking, access-controlled decryption and an
append-only access audit trail.

Persistence and authentication are external collaborators; this package
talks to them through the small repository and resolver protocols defined
alongside the services that use them.
"""

__version__ = "0.1.0"
