from bite import (
    And,
    CaselessLiteral,
    CharacterSet,
    Combine,
    Counted,
    FixedByteCount,
    Forward,
    Literal,
    Opt,
    Parser,
    Suppress,
    TransformValues,
)
from bite.transformers import Group

sp = Suppress(CharacterSet(b" \t")[1, ...])
crlf = Suppress(Literal(b"\r\n"))
nil = CaselessLiteral(b"NIL")

atom_char = CharacterSet(
    rb'(){ %*"\]' + bytes(range(0x20)) + bytes(range(0x7F, 0xA0)), invert=True
)
atom = Combine(atom_char[1, ...])
astring_char = atom_char | Literal(b"]")

number = TransformValues(
    Combine(CharacterSet(b"0123456789")[1, ...]),
    lambda values: tuple(int(v) for v in values),
)

quoted_char = CharacterSet(b'"\\', invert=True) | (
    Suppress(Literal(b"\\")) + CharacterSet(b'"\\')
)
quoted = (
    Suppress(Literal(b'"')) + Combine(quoted_char[0, ...]) + Suppress(Literal(b'"'))
)
literal = Counted(
    Suppress(Literal(b"{")) + number + Suppress(Literal(b"}") + crlf),
    FixedByteCount,
)
string = quoted | literal
nstring = string | nil
astring = Combine(astring_char[1, ...]) | string

text = Combine(CharacterSet(b"\r\n", invert=True)[0, ...])


def paren_list(item: Parser) -> Parser:
    return Group(
        Suppress(Literal(b"("))
        + Opt(sp)
        + Opt(item + (sp + item)[0, ...])
        + Opt(sp)
        + Suppress(Literal(b")"))
    )


def keyed(key: Parser, value: Parser) -> Parser:
    return Group(And([key, sp, value]))


nested_lists = Forward()
nested_lists.assign(
    paren_list(
        nstring | nested_lists | Combine(CharacterSet(b" )", invert=True)[1, ...])
    )
)

# BODY[<section>]<<origin>> -- the section is kept as a single opaque token
section = (
    Suppress(Literal(b"["))
    + Group(Opt(Combine(CharacterSet(b"]\r\n", invert=True)[1, ...])))
    + Suppress(Literal(b"]"))
)
origin = Suppress(Literal(b"<")) + number + Suppress(Literal(b">"))
flag = Combine(Literal(b"\\") + atom) | atom

msg_att = (
    keyed(CaselessLiteral(b"UID"), number)
    | keyed(CaselessLiteral(b"FLAGS"), paren_list(flag))
    | keyed(CaselessLiteral(b"BODY") + section + Opt(origin), nstring)
    | keyed(CaselessLiteral(b"RFC822.SIZE"), number)
    | keyed(CaselessLiteral(b"RFC822"), nstring)
    | keyed(CaselessLiteral(b"INTERNALDATE"), quoted)
    | keyed(
        Combine(CharacterSet(b" \t\r\n[<()", invert=True)[1, ...])
        + Opt(
            Combine(
                Literal(b"[") + CharacterSet(b"]", invert=True)[0, ...] + Literal(b"]")
            )
        )
        + Opt(origin),
        nil | number | nstring | nested_lists,
    )
)

fetch_data = number + sp + CaselessLiteral(b"FETCH") + Opt(sp) + paren_list(msg_att)
search_data = CaselessLiteral(b"SEARCH") + (sp + number)[0, ...] + Opt(sp)
capability_data = CaselessLiteral(b"CAPABILITY") + sp + text
status_data = (
    CaselessLiteral(b"OK") | CaselessLiteral(b"NO") | CaselessLiteral(b"BAD")
) + Opt(sp + text)
bye = CaselessLiteral(b"BYE") + Opt(sp + text)
unparsed_data = (
    Combine(CharacterSet(b"{\r\n", invert=True)[1, ...]) + Opt(literal)
)[0, ...]

response_untagged = (
    Literal(b"*")
    + sp
    + (
        bye
        | capability_data
        | search_data
        | (number + sp + CaselessLiteral(b"EXISTS"))
        | (number + sp + CaselessLiteral(b"EXPUNGE"))
        | fetch_data
        | status_data
        | unparsed_data
    )
)
response_continue = Literal(b"+") + Opt(sp + text)

tag = ~Literal(b"+") + Combine(astring_char[1, ...])
response_tagged = (
    tag
    + sp
    + (CaselessLiteral(b"OK") | CaselessLiteral(b"NO") | CaselessLiteral(b"BAD"))
    + sp
    + text
)

response = (response_continue | response_untagged | response_tagged) + crlf
