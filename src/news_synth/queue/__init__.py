"""Candidate queue: persistence, lifecycle transitions and balanced selection."""
