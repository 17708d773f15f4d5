def format_lines_with_pagination(
    content: str,
    offset: int = 1,
    limit: int = 2000,
    max_line_chars: int = 2000,
) -> str:
    lines = content.split("\n")
    total_lines = len(lines)

    offset = max(1, min(offset, total_lines))
    start_idx = offset - 1
    end_idx = min(start_idx + limit, total_lines)

    output_lines = []
    for i, line in enumerate(lines[start_idx:end_idx]):
        if len(line) > max_line_chars:
            line = line[:max_line_chars] + "..."
        output_lines.append(f"{start_idx + i + 1:>6}|{line}")

    header = f"[{total_lines} lines]"
    if start_idx > 0 or end_idx < total_lines:
        header = f"[{total_lines} lines, showing {offset}-{end_idx}]"

    return header + "\n" + "\n".join(output_lines)


def truncate_output(output: str, limit: int) -> str:
    if len(output) <= limit:
        return output
    return output[:limit] + "\n\n... [output truncated]"
