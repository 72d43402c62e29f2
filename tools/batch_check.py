import os, sys, json, time, argparse, csv

import requests


def post_check(session, url, text, timeout=30, api_key=None):
    headers = {'Content-Type': 'application/json'}
    if api_key:
        headers['X-API-Key'] = api_key
    resp = session.post(url, json={'text': text}, headers=headers, timeout=timeout)
    resp.raise_for_status()
    return resp.json(), resp.headers


def read_records(path):
    records = []
    with open(path, encoding='utf-8') as f:
        for i, line in enumerate(f):
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except ValueError:
                print(f'skipping line {i + 1}: not JSON', file=sys.stderr)
                continue
            t = obj.get('text')
            if not isinstance(t, str) or not t.strip():
                continue
            records.append({'id': obj.get('id', i), 'text': t})
    return records


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument('--in', dest='inp', required=True, help='Input JSONL with at least a text field per line')
    ap.add_argument('--out', dest='out', required=True, help='Output results JSONL')
    ap.add_argument('--csv', dest='csv_path', required=True, help='Output CSV path')
    ap.add_argument('--api', dest='api', default=os.environ.get('API', 'http://localhost:8000'))
    ap.add_argument('--timeout', dest='timeout', type=int, default=30)
    ap.add_argument('--retries', dest='retries', type=int, default=5)
    args = ap.parse_args()

    url = f"{args.api.rstrip('/')}/moderation/check"
    api_key = os.environ.get('API_KEY')

    records = read_records(args.inp)
    if not records:
        print('No valid input lines with a text field.', file=sys.stderr)
        sys.exit(2)

    os.makedirs(os.path.dirname(args.out) or '.', exist_ok=True)
    os.makedirs(os.path.dirname(args.csv_path) or '.', exist_ok=True)
    session = requests.Session()
    counts = {'allow': 0, 'warn': 0, 'block': 0}
    start = time.time()
    with open(args.out, 'w', encoding='utf-8') as out_f, \
            open(args.csv_path, 'w', encoding='utf-8', newline='') as csv_f:
        writer = csv.writer(csv_f)
        writer.writerow(['idx', 'id', 'label', 'action', 'source', 'max_score', 'request_id', 'reason'])
        for idx, rec in enumerate(records):
            # simple retry with backoff
            for attempt in range(args.retries):
                try:
                    data, headers = post_check(session, url, rec['text'], timeout=args.timeout, api_key=api_key)
                    break
                except requests.RequestException:
                    if attempt == args.retries - 1:
                        raise
                    time.sleep(1.5 * (attempt + 1))
            out_f.write(json.dumps({'id': rec['id'], **data}, ensure_ascii=False) + '\n')
            scores = data.get('scores') or {}
            writer.writerow([idx, rec['id'], data.get('label'), data.get('action'), data.get('source'),
                             max(scores.values(), default=0.0), headers.get('X-Request-Id', ''),
                             data.get('reason', '')])
            counts[data.get('action', 'allow')] = counts.get(data.get('action', 'allow'), 0) + 1

    print(f"Checked {len(records)} texts in {time.time() - start:.1f}s "
          f"(allow={counts['allow']} warn={counts['warn']} block={counts['block']}). "
          f"Wrote {args.out} and {args.csv_path}")


if __name__ == '__main__':
    main()
