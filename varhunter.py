#!/usr/bin/env python3
"""
PHP Variable Usage Scanner (Tree-sitter)
========================================
A standalone PHP linter that tokenizes every file with tree-sitter and runs
the variable analysis engine over it.

Detection Categories:
- Unused variables, parameters and globals (WARNING)
- Undefined variables, including $this outside a class (ERROR)
- Redeclaration of a variable through global / static / catch (WARNING)
- self::$x and static::$x outside a class definition (ERROR)
"""

import sys
import json
import argparse
import re
import time
from pathlib import Path
from dataclasses import dataclass
from typing import List, Dict, Optional
from datetime import datetime
from collections import defaultdict

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.syntax import Syntax
from rich.columns import Columns
from rich.text import Text
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, MofNCompleteColumn
from rich.align import Align
from rich.rule import Rule
from rich import box

from php_tokens import AnalysisError, TokenKind, count_kinds, tokenize
from php_varscan import AnalyzerConfig, Severity, VariableAnalyzer
from varhunter_config import ConfigError, VarhunterConfig, load_config

console = Console()

SEVERITY_ORDER = {
    Severity.ERROR: 1,
    Severity.WARNING: 0,
}

SOURCE_LABELS = {
    "VariableAnalysis.UnusedVariable": "Unused Variable",
    "VariableAnalysis.UndefinedVariable": "Undefined Variable",
    "VariableAnalysis.VariableRedeclaration": "Redeclaration",
    "VariableAnalysis.SelfOutsideClass": "self:: Outside Class",
    "VariableAnalysis.StaticOutsideClass": "static:: Outside Class",
}


@dataclass
class Finding:
    """A diagnostic attached to the file and source line it came from."""
    file_path: str
    line_number: int
    col_offset: int
    line_content: str
    message: str
    source: str
    severity: Severity

    def to_dict(self) -> dict:
        return {
            "file": self.file_path,
            "line": self.line_number,
            "column": self.col_offset,
            "code": self.line_content.strip(),
            "message": self.message,
            "source": self.source,
            "severity": self.severity.value,
        }


# ============================================================================
# Scanner — File Processing
# ============================================================================

class Scanner:
    """Runs the analyzer over one file or a directory tree of .php files."""

    SUPPORTED_EXTENSIONS = {'.php', '.phtml', '.inc'}

    def __init__(self, verbose: bool = False, config: VarhunterConfig = None):
        self.verbose = verbose
        self.config = config
        analyzer_config = config.to_analyzer_config() if config else AnalyzerConfig()
        self.analyzer = VariableAnalyzer(analyzer_config)
        self.all_findings: List[Finding] = []
        self.files_scanned = 0
        self.parse_errors = 0
        self.scan_elapsed = 0.0

    def log(self, message: str):
        """Print verbose logging."""
        if self.verbose:
            console.print(f"[dim][*] {message}[/dim]")

    def scan_file(self, file_path: Path) -> List[Finding]:
        """Scan a single file."""
        if self.config and self.config.should_exclude(str(file_path)):
            self.log(f"Excluded by config: {file_path}")
            return []

        try:
            with open(file_path, 'r', encoding='utf-8', errors='replace') as f:
                source_code = f.read()
        except (IOError, OSError) as e:
            console.print(f"[bold red]Error reading {file_path}:[/bold red] {e}")
            self.parse_errors += 1
            return []

        self.files_scanned += 1
        try:
            tokens = tokenize(source_code)
            kinds = count_kinds(tokens)
            self.log(f"Scanning {file_path} ({len(tokens)} tokens, "
                     f"{kinds.get(TokenKind.VARIABLE, 0)} variables)")
            report = self.analyzer.analyze(tokens)
        except AnalysisError as e:
            console.print(f"[bold red]Analysis failed for {file_path}:[/bold red] {e}")
            self.parse_errors += 1
            return []

        lines = source_code.split('\n')
        findings = []
        for f in report.findings:
            line_content = lines[f.line - 1] if 0 < f.line <= len(lines) else ""
            findings.append(Finding(
                file_path=str(file_path),
                line_number=f.line,
                col_offset=f.column,
                line_content=line_content,
                message=f.message,
                source=f.source,
                severity=f.severity,
            ))
        self.log(f"{file_path}: {report.error_count} errors, {report.warning_count} warnings")
        return findings

    def collect_files(self, directory: Path) -> List[Path]:
        files = []
        for path in sorted(directory.rglob("*")):
            if path.is_file() and path.suffix.lower() in self.SUPPORTED_EXTENSIONS:
                files.append(path)
        return files

    def scan_directory(self, directory: Path, show_progress: bool = True) -> List[Finding]:
        """Recursively scan a directory with progress display."""
        findings = []
        php_files = self.collect_files(directory)
        self.log(f"Found {len(php_files)} PHP files under {directory}")

        if not php_files:
            return findings

        if not show_progress:
            for pf in php_files:
                findings.extend(self.scan_file(pf))
            return findings

        with Progress(
            SpinnerColumn("moon"),
            TextColumn("[bold cyan]{task.description}[/bold cyan]"),
            BarColumn(bar_width=30, style="cyan", complete_style="green"),
            MofNCompleteColumn(),
            TextColumn("[dim]{task.fields[current_file]}[/dim]"),
            console=console, transient=True,
        ) as progress:
            task = progress.add_task("Scanning", total=len(php_files), current_file="")
            for pf in php_files:
                progress.update(task, current_file=pf.name)
                findings.extend(self.scan_file(pf))
                progress.advance(task)
        return findings

    def scan(self, target: str, show_progress: bool = True) -> List[Finding]:
        """Scan a file or directory."""
        target_path = Path(target)
        start = time.time()

        if target_path.is_file():
            if target_path.suffix.lower() not in self.SUPPORTED_EXTENSIONS:
                console.print(f"[bold yellow]Warning:[/bold yellow] {target} is not a .php file")
                findings = []
            elif show_progress:
                with Progress(
                    SpinnerColumn("moon"),
                    TextColumn("[bold cyan]Analyzing variables...[/bold cyan]"),
                    TextColumn("[dim]{task.fields[file]}[/dim]"),
                    console=console, transient=True,
                ) as progress:
                    task = progress.add_task("Scanning", total=1, file=target_path.name)
                    findings = self.scan_file(target_path)
                    progress.advance(task)
            else:
                findings = self.scan_file(target_path)
        elif target_path.is_dir():
            findings = self.scan_directory(target_path, show_progress)
        else:
            console.print(f"[bold red]Error:[/bold red] {target} does not exist")
            findings = []

        self.scan_elapsed = time.time() - start
        self.all_findings = findings
        return findings


# ============================================================================
# Filtering & Output
# ============================================================================

def filter_findings(findings: List[Finding], min_severity: str = None,
                    suppression_keyword: str = "varhunter:ignore") -> List[Finding]:
    """Filter findings by severity and inline suppression."""
    result = []
    for f in findings:
        # Check inline suppression (// varhunter:ignore, # ..., /* ... */)
        if re.search(rf'(?://|#|/\*)\s*{re.escape(suppression_keyword)}(?![\w-])', f.line_content):
            continue
        result.append(f)
    if min_severity:
        min_sev_order = SEVERITY_ORDER[Severity[min_severity.upper()]]
        result = [f for f in result if SEVERITY_ORDER[f.severity] >= min_sev_order]
    return result


def _print_banner():
    """Print the scanner banner using Rich."""
    banner_lines = [
        "██╗   ██╗ █████╗ ██████╗ ",
        "██║   ██║██╔══██╗██╔══██╗",
        "██║   ██║███████║██████╔╝",
        "╚██╗ ██╔╝██╔══██║██╔══██╗",
        " ╚████╔╝ ██║  ██║██║  ██║",
        "  ╚═══╝  ╚═╝  ╚═╝╚═╝  ╚═╝",
    ]
    banner_text = '\n'.join(banner_lines)

    title_content = Text()
    title_content.append(banner_text, style="bold magenta")
    title_content.append("\n\n")
    title_content.append("Tree-sitter PHP Variable Analysis v1.0\n", style="bold white")
    title_content.append("Unused | Undefined | Redeclared | Scope-Aware", style="dim")

    console.print()
    console.print(Panel(
        Align.center(title_content),
        border_style="magenta",
        box=box.DOUBLE,
        padding=(1, 2),
    ))
    console.print()


def _build_stats_sidebar(findings: List[Finding], file_count: int, parse_errors: int,
                         elapsed: float) -> Panel:
    """Build the statistics panel."""
    stats = Table(show_header=False, box=None, padding=(0, 1), expand=True)
    stats.add_column("key", style="bold cyan", no_wrap=True, ratio=3)
    stats.add_column("value", style="white", ratio=1)

    stats.add_row("Files Scanned", str(file_count))
    stats.add_row("Parse Errors", str(parse_errors))
    stats.add_row("Total Findings", str(len(findings)))
    stats.add_row("Scan Time", f"{elapsed:.2f}s")
    stats.add_row("Engine", "tree-sitter tokens")
    stats.add_row("", "")

    # Severity breakdown
    sev_counts = defaultdict(int)
    for f in findings:
        sev_counts[f.severity.value] += 1
    sev_styles = {'ERROR': 'bold red', 'WARNING': 'yellow'}
    for sev in ['ERROR', 'WARNING']:
        count = sev_counts.get(sev, 0)
        if count > 0:
            stats.add_row(Text(sev, style=sev_styles[sev]), str(count))

    stats.add_row("", "")

    # Category breakdown
    src_counts = defaultdict(int)
    for f in findings:
        src_counts[f.source] += 1
    for src, count in sorted(src_counts.items(), key=lambda x: -x[1]):
        stats.add_row(Text(SOURCE_LABELS.get(src, src), style="cyan"), str(count))

    return Panel(
        stats,
        title="[bold white]Scan Statistics[/bold white]",
        border_style="cyan",
        box=box.ROUNDED,
        padding=(1, 1),
    )


def _build_finding_panel(f: Finding, source_code: Optional[str] = None) -> Panel:
    """Build a Rich Panel for a single finding."""
    sev = f.severity.value
    border_style = 'red' if f.severity is Severity.ERROR else 'yellow'
    sev_style = 'bold white on red' if f.severity is Severity.ERROR else 'bold yellow'

    # Title line
    title = Text()
    title.append(f" {sev} ", style=sev_style)
    title.append(f" {SOURCE_LABELS.get(f.source, f.source)} ", style="bold white")

    content_parts = []

    location = Text()
    location.append("Location: ", style="bold cyan")
    location.append(f"Line {f.line_number}", style="white")
    location.append(f", Col {f.col_offset}", style="dim")

    source_text = Text()
    source_text.append("Source: ", style="bold magenta")
    source_text.append(f.source, style="white")

    content_parts.append(Columns([location, source_text], padding=(0, 4)))

    message = Text()
    message.append(f"\n{f.message}", style="italic white")
    content_parts.append(message)

    # Code snippet with Syntax highlighting
    if f.line_content.strip():
        if source_code:
            src_lines = source_code.split('\n')
            start = max(0, f.line_number - 3)
            end = min(len(src_lines), f.line_number + 2)
            snippet = '\n'.join(src_lines[start:end])
            syntax = Syntax(
                snippet, "php", theme="monokai",
                line_numbers=True, start_line=start + 1,
                highlight_lines={f.line_number},
            )
        else:
            syntax = Syntax(
                f.line_content.strip(), "php", theme="monokai",
                line_numbers=True, start_line=f.line_number,
            )
        content_parts.append(Text(""))
        content_parts.append(syntax)

    return Panel(
        Group(*content_parts),
        title=title,
        border_style=border_style,
        box=box.ROUNDED,
        padding=(1, 2),
    )


def output_rich(findings: List[Finding], target: str, scanner: Scanner, min_severity: str):
    """Output findings using Rich panels and formatting."""
    # --- Header ---
    scan_date = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    header_text = Text()
    header_text.append("Target: ", style="bold cyan")
    header_text.append(f"{target}  ", style="white")
    header_text.append("Date: ", style="bold cyan")
    header_text.append(f"{scan_date}  ", style="white")
    header_text.append("Severity: ", style="bold cyan")
    header_text.append(f">= {min_severity}", style="white")

    console.print(Panel(
        Align.center(header_text),
        title="[bold white]Scan Info[/bold white]",
        border_style="blue",
        box=box.ROUNDED,
    ))
    console.print()

    # --- Statistics ---
    console.print(_build_stats_sidebar(findings, scanner.files_scanned,
                                       scanner.parse_errors, scanner.scan_elapsed))
    console.print()

    # --- Findings ---
    if not findings:
        console.print(Panel(
            Align.center(Text("No variable problems found.", style="bold green")),
            border_style="green",
            box=box.ROUNDED,
            padding=(1, 4),
        ))
        return

    console.print(Rule("[bold white]Variable Findings[/bold white]", style="red"))
    console.print()

    source_cache: Dict[str, Optional[str]] = {}
    findings_by_file = defaultdict(list)
    for f in findings:
        findings_by_file[f.file_path].append(f)

    for file_path, file_findings in sorted(findings_by_file.items()):
        console.print(Text(f"FILE: {file_path}", style="bold underline cyan"))
        console.print()

        if file_path not in source_cache:
            try:
                source_cache[file_path] = Path(file_path).read_text(
                    encoding='utf-8', errors='replace'
                )
            except (IOError, OSError):
                source_cache[file_path] = None

        src = source_cache[file_path]
        for f in sorted(file_findings, key=lambda x: (x.line_number, x.col_offset)):
            console.print(_build_finding_panel(f, source_code=src))
            console.print()


def output_text_plain(findings: List[Finding], file_path: str):
    """Output findings in plain text format (for file output)."""
    with open(file_path, 'w', encoding='utf-8') as out:
        for f in findings:
            out.write(f"\n{'='*70}\n")
            out.write(f"  [{f.severity.value}] {f.message}\n")
            out.write(f"  File: {f.file_path}:{f.line_number}:{f.col_offset}\n")
            out.write(f"  Code: {f.line_content.strip()}\n")
            out.write(f"  Source: {f.source}\n")

        out.write(f"\n{'='*70}\n")
        out.write(f"Total findings: {len(findings)}\n")

        by_sev = defaultdict(int)
        by_src = defaultdict(int)
        for f in findings:
            by_sev[f.severity.value] += 1
            by_src[f.source] += 1

        if by_sev:
            out.write("\nBy severity:\n")
            for sev in ["ERROR", "WARNING"]:
                if sev in by_sev:
                    out.write(f"  {sev}: {by_sev[sev]}\n")

        if by_src:
            out.write("\nBy source:\n")
            for src, count in sorted(by_src.items()):
                out.write(f"  {src}: {count}\n")


def output_json(findings: List[Finding], scanner: Scanner, file_path: str = None):
    """Output findings in JSON format."""
    by_severity = defaultdict(int)
    by_source = defaultdict(int)
    for f in findings:
        by_severity[f.severity.value] += 1
        by_source[f.source] += 1

    data = {
        "scan_date": datetime.now().isoformat(),
        "scanner": "varhunter v1.0",
        "files_scanned": scanner.files_scanned,
        "parse_errors": scanner.parse_errors,
        "total_findings": len(findings),
        "findings": [f.to_dict() for f in findings],
        "summary": {
            "by_severity": dict(sorted(by_severity.items())),
            "by_source": dict(sorted(by_source.items())),
        },
    }

    json_str = json.dumps(data, indent=2)
    if file_path:
        with open(file_path, 'w', encoding='utf-8') as f:
            f.write(json_str)
    else:
        print(json_str)


def main(argv: List[str] = None):
    parser = argparse.ArgumentParser(
        description="PHP variable usage analysis using Tree-sitter"
    )
    parser.add_argument("target", help="PHP file or directory to scan")
    parser.add_argument("--output", choices=["text", "json"], default="text",
                       help="Output format (default: text)")
    parser.add_argument("-o", "--output-file", help="Write output to file")
    parser.add_argument("--errors-only", action="store_true",
                       help="Only report errors (undefined variables, misplaced self::/static::)")
    parser.add_argument("--no-banner", action="store_true",
                       help="Suppress banner output")
    parser.add_argument("--verbose", "-v", action="store_true",
                       help="Print per-file progress details")
    parser.add_argument("--config", help="Path to .varhunter.yml config file")

    args = parser.parse_args(argv)

    try:
        config = load_config(args.target, args.config)
    except (ConfigError, IOError, OSError) as e:
        console.print(f"[bold red]Invalid configuration:[/bold red] {e}")
        sys.exit(2)
    if args.config and config is None:
        console.print(f"[bold yellow]Warning:[/bold yellow] config file {args.config} not found")

    min_severity = "ERROR" if args.errors_only else (config.min_severity if config else "WARNING")
    is_json = args.output == "json"

    if not args.no_banner and not is_json:
        _print_banner()

    scanner = Scanner(verbose=args.verbose, config=config)
    findings = scanner.scan(args.target, show_progress=not is_json)
    suppression_kw = config.suppression_keyword if config else "varhunter:ignore"
    findings = filter_findings(findings, min_severity, suppression_kw)

    # Sort by file, then position
    findings.sort(key=lambda f: (f.file_path, f.line_number, f.col_offset))

    if is_json:
        output_json(findings, scanner, args.output_file)
    else:
        output_rich(findings, args.target, scanner, min_severity)

        # Save plain text to file if requested
        if args.output_file:
            output_text_plain(findings, args.output_file)
            console.print(f"\n[bold green]Report saved to {args.output_file}[/bold green]")

    # Exit with error code if any errors remain
    if any(f.severity is Severity.ERROR for f in findings):
        sys.exit(1)


if __name__ == "__main__":
    main()
