"""Run summaries, JUnit XML and HTML reports."""
