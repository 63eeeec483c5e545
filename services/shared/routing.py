"""
Topic routing — トピック購読のルーティングキー照合

ルーティングキーはドット区切りの単語列 (``product.deleted``)。
バインディングパターンではトピックエクスチェンジの 2 種類のワイルドカードを使える:

    *   ちょうど 1 単語        product.*   は product.deleted にマッチ
    #   0 個以上の単語        product.#   は product, product.a.b にマッチ
"""


def routing_key_matches(pattern: str, routing_key: str) -> bool:
    """``routing_key`` がバインディング ``pattern`` に選ばれるなら True を返す。"""
    return _match(pattern.split("."), routing_key.split("."))


def _match(pattern: list[str], words: list[str]) -> bool:
    if not pattern:
        return not words

    head, rest = pattern[0], pattern[1:]

    if head == "#":
        # "#" は 0 個を含む任意個の単語を飲み込む
        return any(_match(rest, words[i:]) for i in range(len(words) + 1))

    if not words:
        return False

    if head == "*" or head == words[0]:
        return _match(rest, words[1:])
    return False
