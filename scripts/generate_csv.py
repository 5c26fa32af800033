"""Generate a sample LinkedIn connections export for testing the worker."""
import argparse
import csv
import random
from pathlib import Path

NOTES_PREAMBLE = [
    "Notes:",
    '"When exporting your connection data, you may notice that some of the email '
    'addresses are missing. You will only see email addresses for connections who '
    'have allowed their connections to see or download their email address."',
    "",
]

HEADERS = ["First Name", "Last Name", "URL", "Email Address", "Company", "Position", "Connected On"]

FIRST_NAMES = ["Ada", "Grace", "Alan", "Linus", "Barbara", "Ken", "Margaret", "Dennis", "Radia", "Guido"]
LAST_NAMES = ["Lovelace", "Hopper", "Turing", "Torvalds", "Liskov", "Thompson", "Hamilton", "Ritchie", "Perlman", "van Rossum"]
COMPANIES = ["Acme Corp", "Globex", "Initech", "Umbrella", "Hooli", "Stark Industries", "", "Wayne Enterprises"]
POSITIONS = ["Software Engineer", "Product Manager", "Data Scientist", "CTO", "Recruiter", "Designer", ""]
MONTHS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]


def connection_row(i: int, invalid: bool) -> list[str]:
    """One export row; invalid rows have no profile URL or a foreign one."""
    first = random.choice(FIRST_NAMES)
    last = random.choice(LAST_NAMES)
    slug = f"{first}-{last}-{i:08d}".lower().replace(" ", "-")
    url = f"https://www.linkedin.com/in/{slug}"
    if invalid:
        url = random.choice(["", f"https://example.com/{slug}"])
    email = f"{slug}@example.com" if random.random() < 0.3 else ""
    connected_on = f"{random.randint(1, 28):02d} {random.choice(MONTHS)} {random.randint(2010, 2025)}"
    return [first, last, url, email, random.choice(COMPANIES), random.choice(POSITIONS), connected_on]


def generate_csv(num_rows: int, output_file: str, invalid_ratio: float = 0.02) -> None:
    """
    Generate an export with a notes preamble before the header.

    Args:
        num_rows: Number of connection rows to generate
        output_file: Output CSV file path
        invalid_ratio: Share of rows with a missing or non-profile URL
    """
    with open(output_file, "w", newline="") as f:
        for line in NOTES_PREAMBLE:
            f.write(line + "\n")
        writer = csv.writer(f)
        writer.writerow(HEADERS)

        for i in range(num_rows):
            writer.writerow(connection_row(i, random.random() < invalid_ratio))

            if (i + 1) % 10000 == 0:
                print(f"Generated {i+1:,} rows...")

    print(f"✅ Successfully generated {num_rows:,} connections in {output_file}")


def split_into_parts(path: str, parts: int) -> list[Path]:
    """
    Split a file into ``<name>.part0`` .. ``<name>.part<N-1>`` byte ranges.

    Split points ignore line boundaries, like a browser chunked upload.
    """
    source = Path(path)
    data = source.read_bytes()
    size = -(-len(data) // parts) or 1
    written = []
    for index, start in enumerate(range(0, len(data), size)):
        target = source.with_name(f"{source.name}.part{index}")
        target.write_bytes(data[start:start + size])
        written.append(target)
    print(f"✂️ Split {source.name} into {len(written)} parts")
    return written


def main():
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("num_rows", type=int)
    parser.add_argument("output_file", nargs="?")
    parser.add_argument("--invalid-ratio", type=float, default=0.02)
    parser.add_argument("--parts", type=int, default=0, help="Also split into N .partN files")
    args = parser.parse_args()

    output_file = args.output_file or f"connections_{args.num_rows}.csv"
    print(f"Generating CSV with {args.num_rows:,} rows...")
    generate_csv(args.num_rows, output_file, args.invalid_ratio)
    if args.parts > 0:
        split_into_parts(output_file, args.parts)


if __name__ == "__main__":
    main()
